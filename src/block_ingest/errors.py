class IngestionError(Exception):
    """Base class for errors raised by the ingestion pipeline"""


class TransientFetchError(IngestionError):
    """Temporary failure talking to a chain node; the caller may retry"""


class PermanentAdapterError(IngestionError):
    """The adapter can not make progress (bad url, auth, config)"""


class ChannelPublishError(IngestionError):
    pass


class ChannelConsumeError(IngestionError):
    pass


class SerializationError(IngestionError):
    """A message payload that can not be decoded (poison message)"""


class PersistenceError(IngestionError):
    pass


class ConfigError(IngestionError):
    pass
