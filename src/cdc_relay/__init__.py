"""Change-data-capture relay publishing normalised row changes to Kafka."""

from .model import CdcPosition, ChangeEvent, OperationType, RowData, TableIdentifier


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = [
    "CdcPosition",
    "ChangeEvent",
    "OperationType",
    "RowData",
    "TableIdentifier",
    "main",
]
