from sqlalchemy.types import TypeDecorator, Text

from backend.statsbot.services.aggregate_store import ChannelCounts


class ChannelCountsJSON(TypeDecorator):
    """
    SQLAlchemy TypeDecorator storing a ChannelCounts map as a JSON object in a TEXT column.
    Keys are written sorted so identical maps always produce identical column values.
    """
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return '{}'
        if not isinstance(value, ChannelCounts):
            value = ChannelCounts(value)
        return value.encode()

    def process_result_value(self, value, dialect):
        # Undecodable rows raise so a cold start fails loudly instead of zeroing history
        return ChannelCounts.decode(value)
