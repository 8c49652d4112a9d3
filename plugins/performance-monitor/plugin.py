from datetime import datetime, timezone


def now_ms():
    return datetime.now(timezone.utc).timestamp() * 1000.0


class PerformanceMonitorPlugin:
    def __init__(self):
        self.running = {}
        self.adapters = {}
        self.alerts = []
        self.totals = {"total": 0, "successful": 0, "failed": 0}

    async def on_enable(self, context):
        saved = await context.storage.get("adapters")
        if saved:
            self.adapters = saved
        await context.api.register_menu_item(
            {
                "id": "performance",
                "label": "Performance Monitor",
                "path": "/plugins/performance",
                "position": "tools",
            }
        )
        context.logger.info("Performance Monitor enabled")

    async def on_disable(self, context):
        await context.storage.set("adapters", self.adapters)
        self.running = {}
        context.logger.info("Performance Monitor disabled")

    def before_task_execute(self, task, context):
        self.running[task["id"]] = {
            "adapter": task.get("adapter") or "unknown",
            "start": now_ms(),
        }
        self.totals["total"] += 1

    async def after_task_execute(self, task, result, context):
        started = self.running.pop(task["id"], None)
        if started is None:
            return None

        duration = now_ms() - started["start"]
        success = not (result or {}).get("error")
        stats = self.record(started["adapter"], duration, success)
        self.totals["successful" if success else "failed"] += 1

        for alert in self.check_alerts(task["id"], duration, started["adapter"], stats, context):
            self.alerts.append(alert)
            context.logger.warning(alert["message"])
            await context.api.emit("metrics:alert", alert)

        metrics = {"task_id": task["id"], "duration_ms": duration, "success": success}
        await context.api.emit("metrics:task:completed", metrics)
        return metrics

    def record(self, adapter, duration, success):
        stats = self.adapters.setdefault(
            adapter, {"total": 0, "failed": 0, "total_duration": 0.0}
        )
        stats["total"] += 1
        stats["total_duration"] += duration
        if not success:
            stats["failed"] += 1
        stats["average_duration"] = stats["total_duration"] / stats["total"]
        stats["error_rate"] = stats["failed"] / stats["total"]
        return stats

    def check_alerts(self, task_id, duration, adapter, stats, context):
        alerts = []
        threshold = context.config.get("responseTimeThresholdMs")
        if threshold and duration > threshold:
            alerts.append(
                {
                    "type": "response_time",
                    "severity": "warning",
                    "task_id": task_id,
                    "message": f"Task {task_id} took {duration:.0f}ms (threshold: {threshold}ms)",
                }
            )
        max_error_rate = context.config.get("errorRateThreshold")
        if max_error_rate is not None and stats["error_rate"] > max_error_rate:
            alerts.append(
                {
                    "type": "error_rate",
                    "severity": "critical",
                    "adapter": adapter,
                    "message": f"Adapter {adapter} error rate is {stats['error_rate']:.2%}",
                }
            )
        return alerts

    def report(self):
        return {"system": dict(self.totals), "adapters": self.adapters, "alerts": list(self.alerts)}


default = PerformanceMonitorPlugin
