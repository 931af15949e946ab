"""Change-data-capture tail for MySQL binlogs."""

from .connector import AlreadyStarted, BinlogConnector, ConnectorState, LifecycleError
from .position import ResumePosition
from .supervisor import ConnectionExhausted


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = [
    "AlreadyStarted",
    "BinlogConnector",
    "ConnectionExhausted",
    "ConnectorState",
    "LifecycleError",
    "ResumePosition",
    "main",
]
