class AutoscalerError(Exception):
    """Base class for every error raised by the autoscaler."""


class ConfigError(AutoscalerError):
    pass


class NotResizableError(AutoscalerError):
    pass


class StatusDecodeError(AutoscalerError):
    pass


class StatusEncodeError(AutoscalerError):
    pass


class MetricsClientError(AutoscalerError):
    pass


class ResizeError(AutoscalerError):
    pass
