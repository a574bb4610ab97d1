"""Gateway exceptions."""


class GatewayConfigError(ValueError):
    """Account or channel configuration is unusable (e.g. missing credentials)."""


class FeishuSendError(RuntimeError):
    """Feishu rejected an outbound message or the target was invalid."""

    def __init__(self, message: str, code: int = 0) -> None:
        super().__init__(message)
        self.code = code


class WebchatForwardError(RuntimeError):
    """The Feishu custom-bot webhook returned an HTTP or application error."""
