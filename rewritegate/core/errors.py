"""Project error hierarchy."""


class RewriteGateError(Exception):
    """Base error."""


class SinkWriteError(RewriteGateError):
    """Raised when the downstream consumer refuses or fails a write."""


class UpstreamReadError(RewriteGateError):
    """Raised when the upstream body fails mid-stream."""
