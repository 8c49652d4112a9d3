"""Validator for plugin manifests, permissions, configuration and source."""

import re
from typing import Any, List, Mapping, Tuple, Union
import logging

from .models import PluginManifest, ValidationResult

logger = logging.getLogger(__name__)


REQUIRED_METADATA_FIELDS = ("id", "name", "version", "author")
ALLOWED_ENTRY_SUFFIXES = (".py",)
CONFIG_PROPERTY_TYPES = {"string", "number", "boolean", "array", "object"}

DANGEROUS_PATHS = (
    "/",
    "/etc",
    "/usr",
    "/bin",
    "/sbin",
    "/boot",
    "/dev",
    "/proc",
    "/sys",
    "C:\\Windows",
    "C:\\Program Files",
)

PLUGIN_ID_PATTERN = re.compile(r"^[a-z0-9-]+$")
SEMVER_PATTERN = re.compile(
    r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.-]+)?(\+[a-zA-Z0-9.-]+)?$"
)

HOST_PATTERNS = (
    re.compile(r"^\*$"),
    re.compile(r"^\*\.[a-z0-9.-]+$", re.IGNORECASE),
    re.compile(r"^[a-z0-9.-]+$", re.IGNORECASE),
    re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$"),
    re.compile(r"^localhost$", re.IGNORECASE),
    re.compile(r"^127\.0\.0\.1$"),
)

CODE_ERROR_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"(?<![\w.])eval\s*\("), "Use of eval() is not allowed"),
    (re.compile(r"(?<![\w.])exec\s*\("), "Use of exec() is not allowed"),
    (re.compile(r"(?<![\w.])compile\s*\("), "Use of compile() is not allowed"),
    (re.compile(r"__import__\s*\("), "Use of __import__() is not allowed"),
    (re.compile(r"types\.FunctionType\s*\("), "Dynamic function construction is not allowed"),
    (
        re.compile(r"^\s*(import\s+subprocess|from\s+subprocess\s+import)", re.MULTILINE),
        "Direct use of subprocess is restricted",
    ),
    (re.compile(r"os\.(system|popen|exec\w*|spawn\w*)\s*\("), "Use of os process APIs is restricted"),
    (re.compile(r"(sys\.exit|os\._exit)\s*\("), "Process termination is not allowed"),
    (re.compile(r"(?<![\w.])(exit|quit)\s*\(\s*\)"), "Process termination is not allowed"),
)

CODE_WARNING_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"set_timeout\(.*,\s*0\s*\)"), "Use of set_timeout with 0 delay"),
    (re.compile(r"\.call_soon\s*\("), "Use of call_soon for zero-delay deferral"),
    (re.compile(r"^\s*while\s+(True|1)\s*:", re.MULTILINE), "Infinite loop detected"),
    (
        re.compile(r"(?<![\w.])open\s*\(|\.read_text\s*\(|\.write_text\s*\(|shutil\.\w+\s*\("),
        "Synchronous filesystem operations may block",
    ),
)


class PluginValidator:
    """Pure checks over manifests and plugin source text.

    ``validate_plugin_code`` is a textual heuristic and only a
    defense-in-depth layer; the sandbox is the capability boundary.
    """

    def validate_manifest(
        self, manifest: Union[PluginManifest, Mapping[str, Any]]
    ) -> ValidationResult:
        """
        Validate a plugin manifest.

        Args:
            manifest: Parsed ``plugin.json`` content or a manifest model

        Returns:
            ValidationResult with errors (blocking) and warnings
        """
        if isinstance(manifest, PluginManifest):
            data: Mapping[str, Any] = manifest.model_dump(by_alias=True)
        elif isinstance(manifest, Mapping):
            data = manifest
        else:
            return ValidationResult(valid=False, errors=["Manifest must be an object"])

        errors: List[str] = []
        warnings: List[str] = []

        metadata = data.get("metadata")
        if not metadata:
            errors.append("Missing metadata")
        elif not isinstance(metadata, Mapping):
            errors.append("Invalid metadata: must be an object")
        else:
            self._validate_metadata(metadata, errors, warnings)

        if not data.get("capabilities") and not isinstance(data.get("capabilities"), Mapping):
            errors.append("Missing capabilities")

        main = data.get("main")
        if not main:
            errors.append("Missing main entry point")
        elif not self._is_valid_entry_point(main):
            errors.append("Invalid main entry point format")

        permissions = data.get("permissions")
        if permissions:
            self._validate_permissions(permissions, errors, warnings)

        configuration = data.get("configuration")
        if configuration:
            self._validate_configuration_schema(configuration, errors, warnings)

        if errors:
            logger.warning(f"Plugin manifest validation failed: {errors}")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def _validate_metadata(
        self, metadata: Mapping[str, Any], errors: List[str], warnings: List[str]
    ) -> None:
        for field in REQUIRED_METADATA_FIELDS:
            if not metadata.get(field):
                errors.append(f"Missing metadata.{field}")

        plugin_id = metadata.get("id")
        if plugin_id and not self._is_valid_plugin_id(plugin_id):
            errors.append(
                "Invalid plugin ID format. Must be lowercase alphanumeric with hyphens"
            )

        version = metadata.get("version")
        if version and not self._is_valid_version(version):
            errors.append("Invalid version format. Must follow semantic versioning")

        if not metadata.get("description"):
            warnings.append("Missing metadata.description")
        if not metadata.get("license"):
            warnings.append("Missing metadata.license")

    def _validate_permissions(
        self, permissions: Any, errors: List[str], warnings: List[str]
    ) -> None:
        if not isinstance(permissions, Mapping):
            errors.append("Invalid permissions: must be an object")
            return

        filesystem = self._permission_section(permissions, "filesystem", errors)
        for mode in ("read", "write"):
            for path in self._permission_list(filesystem, mode, "filesystem", errors):
                if self._is_dangerous_path(str(path)):
                    errors.append(f"Dangerous filesystem {mode} path: {path}")

        network = self._permission_section(permissions, "network", errors)
        for host in self._permission_list(network, "hosts", "network", errors):
            if not self._is_valid_host(str(host)):
                errors.append(f"Invalid network host: {host}")

        system = self._permission_section(permissions, "system", errors)
        if system.get("exec"):
            warnings.append("Plugin requests system execution permissions")

    @staticmethod
    def _permission_section(
        permissions: Mapping, name: str, errors: List[str]
    ) -> Mapping:
        section = permissions.get(name)
        if section is None:
            return {}
        if not isinstance(section, Mapping):
            errors.append(f"Invalid permissions.{name}: must be an object")
            return {}
        return section

    @staticmethod
    def _permission_list(
        section: Mapping, key: str, name: str, errors: List[str]
    ) -> List[Any]:
        values = section.get(key)
        if values is None:
            return []
        if not isinstance(values, list):
            errors.append(f"Invalid permissions.{name}.{key}: must be a list")
            return []
        return values

    def _validate_configuration_schema(
        self, schema: Any, errors: List[str], warnings: List[str]
    ) -> None:
        properties = schema.get("properties") if isinstance(schema, Mapping) else None
        if not isinstance(properties, Mapping):
            errors.append("Invalid configuration schema: missing properties")
            return

        for key, prop in properties.items():
            if not isinstance(prop, Mapping):
                errors.append(f"Invalid configuration property: {key}")
                continue
            if prop.get("type") not in CONFIG_PROPERTY_TYPES:
                errors.append(f"Invalid type for configuration property: {key}")
            if not prop.get("description"):
                warnings.append(f"Missing description for configuration property: {key}")

    def _is_valid_plugin_id(self, plugin_id: Any) -> bool:
        return isinstance(plugin_id, str) and bool(PLUGIN_ID_PATTERN.match(plugin_id))

    def _is_valid_version(self, version: Any) -> bool:
        return isinstance(version, str) and bool(SEMVER_PATTERN.match(version))

    def _is_valid_entry_point(self, main: Any) -> bool:
        return (
            isinstance(main, str)
            and main.endswith(ALLOWED_ENTRY_SUFFIXES)
            and ".." not in main
        )

    def _is_dangerous_path(self, path: str) -> bool:
        return any(
            path == root or path.startswith(root + "/") or path.startswith(root + "\\")
            for root in DANGEROUS_PATHS
        )

    def _is_valid_host(self, host: str) -> bool:
        return any(pattern.match(host) for pattern in HOST_PATTERNS)

    def validate_plugin_code(self, code: str) -> ValidationResult:
        """Flag disallowed and suspicious patterns in plugin source."""
        errors: List[str] = []
        warnings: List[str] = []

        for pattern, message in CODE_ERROR_PATTERNS:
            if pattern.search(code) and message not in errors:
                errors.append(message)

        for pattern, message in CODE_WARNING_PATTERNS:
            if pattern.search(code):
                warnings.append(message)

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

