from dataclasses import dataclass

from .phases import PhaseResult
from .tasks import OutcomeRecord
from .utils import logger


def _verdict(failure_count: int) -> str:
    if not failure_count:
        return "no failures"
    return f"{failure_count} failures"


@dataclass(frozen=True)
class Summary:
    text: str
    success_count: int
    failure_count: int

    @property
    def verdict(self) -> str:
        return _verdict(self.failure_count)


def _sorted(records) -> list[OutcomeRecord]:
    return sorted(records, key=lambda r: (r.task_id, r.detail))


def report(results: list[PhaseResult]) -> Summary:
    """Render the success/failure summary of a boot.

    Records are sorted by task id within each phase so the same outcomes
    always give the same text, whatever order the tasks completed in.
    """
    lines = ["=== Boot summary ==="]
    success_count = 0
    failure_count = 0
    for result in results:
        successes = _sorted(result.successes)
        failures = _sorted(result.failures)
        success_count += len(successes)
        failure_count += len(failures)
        total = len(successes) + len(failures)
        lines.append(f"{result.name.value}: {len(successes)}/{total} succeeded")
        for record in successes:
            lines.append(f"└─ {record}")
        if failures:
            lines.append(f"{result.name.value} failures:")
            for record in failures:
                lines.append(f"└─ {record}")
        if result.setup_error:
            lines.append(f"{result.name.value} setup error: {result.setup_error}")
    lines.append(f"Result: {success_count} succeeded, {_verdict(failure_count)}")
    return Summary("\n".join(lines), success_count, failure_count)


def log_summary(summary: Summary) -> None:
    for line in summary.text.splitlines():
        if line.startswith("└─ FAIL") or "setup error:" in line:
            logger.warning(line)
        else:
            logger.info(line)
    if summary.failure_count:
        logger.warning(
            "⚠️ Some tasks failed. Check the logs above, and that HF_TOKEN can access private models."
        )
