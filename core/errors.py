"""Domain errors raised by the administrative layer."""


class BotRelayError(Exception):
    pass


class NotFoundError(BotRelayError):
    """A tenant, bot, funnel or session referenced by id does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidRequestError(BotRelayError):
    """Input that cannot be applied (bad stage data, unknown status, ...)."""
