"""Lookup of charge processors by id."""

from __future__ import annotations

from marketplace_ledger.processors.base import ChargeProcessor


class UnknownChargeProcessorError(LookupError):
    """No processor is registered under the requested id."""

    def __init__(self, processor_id: str | None):
        self.processor_id = processor_id
        super().__init__(f"No charge processor registered for: {processor_id}")


class ChargeProcessorRegistry:
    """Holds one processor adapter per charge processor id."""

    def __init__(self, processors: list[ChargeProcessor] | None = None):
        self._processors: dict[str, ChargeProcessor] = {}
        for processor in processors or []:
            self.register(processor)

    def register(self, processor: ChargeProcessor) -> None:
        self._processors[processor.processor_id] = processor

    def get(self, processor_id: str | None) -> ChargeProcessor:
        processor = self._processors.get(processor_id) if processor_id else None
        if processor is None:
            raise UnknownChargeProcessorError(processor_id)
        return processor

    def __contains__(self, processor_id: object) -> bool:
        return processor_id in self._processors

    def ids(self) -> list[str]:
        return sorted(self._processors)
