"""JSON report of a single-shot run: outcome, stats and an event timeline."""

import json
from datetime import datetime, timezone

REPORT_VERSION = 1


class ReportCollector:
    """Records what happened during a run; `finalize` turns it into a report."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.warnings: list[str] = []
        self.llm_calls = 0
        self.llm_time = 0.0
        self.tool_time = 0.0
        self.max_turn_seen = 0
        self._report: dict | None = None

    def _event(self, turn: int, kind: str, **fields) -> dict:
        event = {"turn": turn, "type": kind}
        event.update((k, v) for k, v in fields.items() if v is not None)
        self.events.append(event)
        return event

    def record_llm_call(self, turn, duration, token_est, finish_reason):
        self.llm_calls += 1
        self.llm_time += duration
        self.max_turn_seen = max(self.max_turn_seen, turn)
        self._event(
            turn,
            "llm_call",
            duration_s=round(duration, 3),
            finish_reason=finish_reason,
            prompt_tokens_est=token_est,
        )

    def record_tool_call(
        self, turn, name, arguments, succeeded, duration, result_length, error=None
    ):
        self.tool_time += duration
        counts = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        counts["succeeded" if succeeded else "failed"] += 1
        event = self._event(
            turn,
            "tool_call",
            name=name,
            succeeded=succeeded,
            duration_s=round(duration, 3),
            result_length=result_length,
            error=error,
        )
        # kept even when None so every tool event has the key
        event["arguments"] = arguments

    def record_warning(self, turn, message):
        self.warnings.append(message)
        self._event(turn, "warning", message=message)

    def record_transition(self, turn, source, target):
        self._event(turn, "transition", **{"from": source, "to": target})

    def _stats(self, turns: int, todos) -> dict:
        ok = sum(c["succeeded"] for c in self.tool_stats.values())
        failed = sum(c["failed"] for c in self.tool_stats.values())
        return {
            "turns": turns,
            "llm_calls": self.llm_calls,
            "tool_calls_total": ok + failed,
            "tool_calls_succeeded": ok,
            "tool_calls_failed": failed,
            "tool_calls_by_name": {k: dict(v) for k, v in self.tool_stats.items()},
            "warnings": list(self.warnings),
            "total_llm_time_s": round(self.llm_time, 3),
            "total_tool_time_s": round(self.tool_time, 3),
            "todos": todos or [],
        }

    def build_report(
        self,
        *,
        task: str,
        model: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
        todos: list[dict] | None = None,
    ) -> dict:
        result = {"outcome": outcome, "answer": answer, "exit_code": exit_code}
        if error_message is not None:
            result["error_message"] = error_message
        return {
            "version": REPORT_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "settings": settings,
            "result": result,
            "stats": self._stats(turns, todos),
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        self._report = self.build_report(**kwargs)
        return self._report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._report, f, indent=2)
            f.write("\n")
