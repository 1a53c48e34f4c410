"""Error types and the JSON run report written by ``--report``."""

import json
from collections import defaultdict
from datetime import datetime, timezone

REPORT_VERSION = 1


class AgentError(Exception):
    """A failure that ends the run with exit code 1 (backend down, bad setup, ...)."""


class ConfigError(AgentError):
    """Bad configuration: malformed TOML or JSON, wrong value types, bad server names."""


class ReportCollector:
    """Timeline of LLM calls, tool calls and escalations for one run."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = defaultdict(
            lambda: {"succeeded": 0, "failed": 0}
        )
        self.llm_calls = 0
        self.llm_seconds = 0.0
        self.tool_seconds = 0.0
        self.max_round_seen = 0
        self.escalations = 0

    def _event(self, round_no: int, kind: str, **fields) -> None:
        self.max_round_seen = max(self.max_round_seen, round_no)
        self.events.append({"round": round_no, "type": kind, **fields})

    def record_llm_call(
        self, round_no: int, duration: float, token_est: int, finish_reason: str
    ):
        self.llm_calls += 1
        self.llm_seconds += duration
        self._event(
            round_no,
            "llm_call",
            duration_s=round(duration, 3),
            prompt_tokens_est=token_est,
            finish_reason=finish_reason,
        )

    def record_tool_call(
        self,
        round_no: int,
        name: str,
        arguments,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.tool_seconds += duration
        self.tool_stats[name]["succeeded" if succeeded else "failed"] += 1
        extra = {} if error is None else {"error": error}
        self._event(
            round_no,
            "tool_call",
            name=name,
            arguments=arguments,
            succeeded=succeeded,
            duration_s=round(duration, 3),
            result_length=result_length,
            **extra,
        )

    def record_escalation(self, round_no: int, reason: str):
        self.escalations += 1
        self._event(round_no, "escalation", reason=reason)

    def _stats(self, rounds: int) -> dict:
        ok = sum(s["succeeded"] for s in self.tool_stats.values())
        failed = sum(s["failed"] for s in self.tool_stats.values())
        return {
            "rounds": rounds,
            "tool_calls_total": ok + failed,
            "tool_calls_succeeded": ok,
            "tool_calls_failed": failed,
            "tool_calls_by_name": {k: dict(v) for k, v in self.tool_stats.items()},
            "llm_calls": self.llm_calls,
            "total_llm_time_s": round(self.llm_seconds, 3),
            "total_tool_time_s": round(self.tool_seconds, 3),
            "escalations": self.escalations,
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
        rounds: int,
        error_message: str | None = None,
    ) -> dict:
        """Assemble the report dict.

        *outcome* is one of ``answer``, ``needs_escalation`` or ``error``;
        ``error_message`` only appears in the result when given.
        """
        result: dict = {"outcome": outcome, "answer": answer, "exit_code": exit_code}
        if error_message is not None:
            result["error_message"] = error_message
        return {
            "version": REPORT_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "settings": settings,
            "result": result,
            "stats": self._stats(rounds),
            "timeline": self.events,
        }

    def finalize(self, path: str, **kwargs) -> dict:
        report = self.build_report(**kwargs)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
            f.write("\n")
        return report
