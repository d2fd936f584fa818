"""Repeated-error guard: force the model to stop retrying an identical failure."""

THRESHOLD = 2
MAX_QUOTED_ERROR = 200


def intervention_message(error: str, count: int) -> str:
    return (
        f'SYSTEM INTERVENTION: The same error has occurred {count} times: '
        f'"{error[:MAX_QUOTED_ERROR]}". Stop retrying this action. '
        "Report the problem to the user and end the task."
    )


class AntiLoopGuard:
    """Per-turn error counter keyed on the exact error text."""

    def __init__(self, threshold: int = THRESHOLD):
        self.threshold = threshold
        self.counts: dict[str, int] = {}

    def reset(self) -> None:
        self.counts.clear()

    def check(self, error: str) -> tuple[str, int, bool]:
        """Record an error; returns (text to surface, count, intervened)."""
        key = error.strip()
        count = self.counts.get(key, 0) + 1
        self.counts[key] = count
        if count >= self.threshold:
            return intervention_message(key, count), count, True
        return error, count, False
