"""Expands ``metadata.template_id`` tasks into full prompts."""

import re
from datetime import datetime, timezone

VARIABLE = re.compile(r"\{\{(\w+)\}\}")

BUILT_IN_TEMPLATES = {
    "api-endpoint": {
        "name": "API Endpoint",
        "description": "Create a REST API endpoint",
        "task_type": "CODE_GENERATION",
        "prompt": (
            "Create a {{method}} API endpoint at {{path}} that {{description}}.\n\n"
            "Requirements:\n"
            "- Input validation for: {{validation}}\n"
            "- Authentication: {{auth}}\n"
            "- Error handling\n"
            "- OpenAPI documentation\n"
            "- Unit tests"
        ),
        "variables": {
            "method": {"required": True},
            "path": {"required": True},
            "description": {"required": True},
            "validation": {"default": "all inputs"},
            "auth": {"default": "JWT"},
        },
    },
    "refactor-function": {
        "name": "Refactor Function",
        "description": "Refactor a function for better quality",
        "task_type": "REFACTORING",
        "prompt": (
            "Refactor the following function to improve {{improvements}}:\n\n"
            "```{{language}}\n{{code}}\n```\n\n"
            "Maintain: {{maintain}}"
        ),
        "variables": {
            "code": {"required": True},
            "language": {"default": "python"},
            "improvements": {"default": ["readability", "maintainability"]},
            "maintain": {"default": "backward compatibility"},
        },
    },
    "debug-issue": {
        "name": "Debug Issue",
        "description": "Debug a specific issue in code",
        "task_type": "DEBUGGING",
        "prompt": (
            "Debug the following issue: {{issue}}\n\n"
            "Error message:\n```\n{{error}}\n```\n\n"
            "Environment: {{environment}}"
        ),
        "variables": {
            "issue": {"required": True},
            "error": {"required": True},
            "environment": {"default": "development"},
        },
    },
}


def system_variables():
    now = datetime.now(timezone.utc)
    return {
        "current_date": now.strftime("%Y-%m-%d"),
        "current_time": now.strftime("%H:%M:%S"),
        "year": str(now.year),
    }


def render(template, variables):
    values = dict(system_variables())
    values.update(variables)

    for name, definition in template.get("variables", {}).items():
        if values.get(name) in (None, "") and "default" in definition:
            values[name] = definition["default"]
        if definition.get("required") and values.get(name) in (None, ""):
            raise ValueError(f"Required variable missing: {name}")

    def substitute(match):
        value = values.get(match.group(1))
        if value is None:
            return match.group(0)
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        return str(value)

    return VARIABLE.sub(substitute, template["prompt"])


def template_id_for(name):
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


class TaskTemplatesPlugin:
    def __init__(self):
        self.templates = {}

    async def on_install(self, context):
        for template_id, template in BUILT_IN_TEMPLATES.items():
            await context.storage.set(template_id, template)
        context.logger.info("Task Templates installed with built-in templates")

    async def on_enable(self, context):
        self.templates = {}
        for key in await context.storage.keys():
            template = await context.storage.get(key)
            if template:
                self.templates[key] = template
        context.logger.info(f"Loaded {len(self.templates)} templates")

        await context.api.register_menu_item(
            {
                "id": "templates",
                "label": "Task Templates",
                "path": "/plugins/templates",
                "position": "tools",
            }
        )

    async def on_disable(self, context):
        self.templates = {}

    async def before_task_create(self, task, context):
        metadata = task.get("metadata") or {}
        template_id = metadata.get("template_id")
        if not template_id:
            return task

        template = self.templates.get(template_id)
        if template is None:
            context.logger.warning(f"Template not found: {template_id}")
            return task

        variables = dict(context.config.get("defaultVariables") or {})
        variables.update(metadata.get("template_variables") or {})
        try:
            prompt = render(template, variables)
        except ValueError as e:
            context.logger.error(f"Failed to process template {template_id}: {e}")
            if context.config.get("strictVariables"):
                raise
            return task

        task["prompt"] = prompt
        task["type"] = template["task_type"]
        task["metadata"] = dict(metadata, processed_from_template=True, template_name=template["name"])
        context.logger.info(f"Task created from template {template_id}")
        return task

    async def create_template(self, template, context):
        template_id = template_id_for(template["name"])
        stamp = datetime.now(timezone.utc).isoformat()
        stored = dict(template, id=template_id, created_at=stamp, updated_at=stamp)
        await context.storage.set(template_id, stored)
        self.templates[template_id] = stored
        return stored

    async def delete_template(self, template_id, context):
        if template_id not in self.templates:
            raise KeyError(f"Template not found: {template_id}")
        await context.storage.delete(template_id)
        del self.templates[template_id]


default = TaskTemplatesPlugin
