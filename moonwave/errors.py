class MoonwaveError(Exception):
    pass


class ConfigError(MoonwaveError):
    pass


class DataSourceError(MoonwaveError):
    """Subscription source unreachable or returned a record we can't use."""

    def __init__(self, message: str, subscription_id: str | None = None):
        super().__init__(message)
        self.subscription_id = subscription_id


class InvalidSubscriptionError(DataSourceError):
    pass


class DedupStoreError(MoonwaveError):
    pass


class SinkError(MoonwaveError):
    pass
