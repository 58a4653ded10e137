from typing import Any, Optional


class MultibotError(Exception):
    """ """


class ParseError(MultibotError):
    """
    The command text could not be split into tokens
    """
    def __init__(self, text: str, reason: str) -> None:
        self.text = text
        self.reason = reason
        super().__init__(f"Unable to parse '{text}': {reason}")


class UnknownCommand(MultibotError):
    """ """

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown command: {name}")


class ScopeDenied(MultibotError):
    """ """

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"Command not allowed here: {command}")


class MissingArgument(MultibotError):
    """ """

    def __init__(self, argument: str, command: Optional[str] = None) -> None:
        self.argument = argument
        self.command = command
        prefix = f"{command}: " if command else ""
        super().__init__(f"{prefix}Missing required argument: {argument}")


class InvalidArgument(MultibotError):
    """
    Raised while binding tokens to arguments, or by a handler validating
    its own input. `token` is the raw text the user supplied.
    """
    def __init__(
        self,
        argument: str,
        token: Any,
        reason: str = "is invalid",
        command: Optional[str] = None,
    ) -> None:
        self.argument = argument
        self.token = token
        self.reason = reason
        self.command = command
        prefix = f"{command}: " if command else ""
        super().__init__(f"{prefix}{argument} {reason} (got {token!r})")


class HandlerTimeout(MultibotError):
    """ """

    def __init__(self, handler: str, timeout: float) -> None:
        self.handler = handler
        self.timeout = timeout
        super().__init__(f"{handler} did not finish within {timeout:.2f}s")


class RecipientUnavailable(MultibotError):
    """ """

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Agent not found or not running: {name}")


class StorageFailure(MultibotError):
    """
    Raised by a storage backend when the durable store fails. Always
    chained to the underlying error.
    """
    def __init__(self, operation: str, key: Any, error: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.key = key
        self.error = error
        detail = f": {type(error).__name__}: {error}" if error is not None else ""
        super().__init__(f"Storage {operation} failed for {key!r}{detail}")


class InvalidCommandSpec(MultibotError):
    """ """

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid command '{name}': {reason}")


class AgentAlreadyRegistered(MultibotError):
    """ """

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Agent {name} is already running")
