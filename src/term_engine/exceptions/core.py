class TermEngineError(Exception):
    pass

class ConfigError(TermEngineError):
    pass


class RecoverableError(TermEngineError):
    """Transient or retryable failure; handled at the source/publisher layers."""


class FatalError(TermEngineError):
    """Non-recoverable failure requiring supervised shutdown."""


class TransientIOError(RecoverableError):
    """Broker or network hiccup. Retried with backoff."""


class RegistryUnavailable(RecoverableError):
    """No term snapshot has been published yet."""


class MalformedEventError(TermEngineError):
    """Inbound payload is unparseable or misses a required field."""

    def __init__(self, message: str, *, raw=None, field: str | None = None):
        super().__init__(message)
        self.raw = raw
        self.field = field


class RuleEvaluationDefect(TermEngineError):
    """Evaluating one term against one event raised."""

    def __init__(self, term_id: str, event_seq: int, cause: BaseException):
        super().__init__(f"term {term_id!r} failed on seq {event_seq}: {type(cause).__name__}: {cause}")
        self.term_id = term_id
        self.event_seq = event_seq
        self.cause = cause


class FatalPublishError(TermEngineError):
    """Sink refused an alert permanently; retrying cannot help."""


class PublishBudgetExhausted(TermEngineError):
    """Decisions for an event stayed unpublished after every retry round."""

    def __init__(self, instrument: str, seq: int, pending: list[str]):
        super().__init__(
            f"{len(pending)} decision(s) unpublished for {instrument}#{seq}"
        )
        self.instrument = instrument
        self.seq = seq
        self.pending = list(pending)
