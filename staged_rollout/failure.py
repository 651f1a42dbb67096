PASS_WORDS = ("pass", "ok", "1", "true")
FAIL_WORDS = ("fail", "error", "0", "false")


class FailureInjector:
    """Scripted probe outcomes used instead of real network calls.

    ``outcomes`` maps an endpoint to a list of booleans (True = pass). A plain
    list applies to every endpoint. Once a script runs out, the last outcome
    repeats.
    """

    def __init__(self, outcomes=None, delay=0):
        if isinstance(outcomes, (list, tuple)):
            outcomes = {None: list(outcomes)}
        self.scripts = {k: list(v) for k, v in (outcomes or {}).items()}
        self.delay = delay
        self.attempts = {}

    @classmethod
    def from_script(cls, text, delay=0):
        """Build an injector from a comma separated script like "pass,fail,pass" """
        outcomes = []
        for word in (w.strip().lower() for w in text.split(",") if w.strip()):
            if word in PASS_WORDS:
                outcomes.append(True)
            elif word in FAIL_WORDS:
                outcomes.append(False)
            else:
                raise ValueError(f"unknown probe outcome: {word!r}")
        return cls(outcomes, delay=delay)

    def delay_seconds(self):
        return self.delay

    def scripted(self, endpoint):
        return endpoint in self.scripts or None in self.scripts

    def next_outcome(self, endpoint):
        key = endpoint if endpoint in self.scripts else None
        script = self.scripts.get(key)
        if not script:
            return None
        attempt = self.attempts.get(key, 0)
        self.attempts[key] = attempt + 1
        return script[min(attempt, len(script) - 1)]
