"""Quality Oracle implementations and factory.

Two oracles:
    - MockQualityOracle:      instant configurable verdicts for dry runs
    - SemanticQualityOracle:  LLM judge via LiteLLM over the session transcript
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from session_clearinghouse.infrastructure.quality.mock import MockQualityOracle
from session_clearinghouse.infrastructure.quality.semantic import (
    LedgerTranscriptSource,
    SemanticQualityOracle,
)

if TYPE_CHECKING:
    from session_clearinghouse.domain.protocols import LedgerStore, QualityOracle


class QualityOracleFactory:
    """Creates the configured quality oracle.

    Usage:
        oracle = QualityOracleFactory.create("semantic", store)
        verdict = await oracle.evaluate("meeting-42")
    """

    _registry: dict[str, type] = {
        "mock": MockQualityOracle,
        "semantic": SemanticQualityOracle,
    }

    @classmethod
    def create(cls, oracle_type: str, store: LedgerStore) -> QualityOracle:
        """Create an oracle instance by type name.

        Raises:
            ValueError: If the type is unknown.
        """
        oracle_class = cls._registry.get(oracle_type)
        if oracle_class is None:
            raise ValueError(
                f"Unknown quality oracle: '{oracle_type}'. "
                f"Valid types: {list(cls._registry.keys())}"
            )
        if oracle_class is SemanticQualityOracle:
            return SemanticQualityOracle(LedgerTranscriptSource(store))
        return oracle_class()

    @classmethod
    def get_supported_types(cls) -> list[str]:
        """Return the list of supported oracle type strings."""
        return list(cls._registry.keys())


__all__ = [
    "LedgerTranscriptSource",
    "MockQualityOracle",
    "QualityOracleFactory",
    "SemanticQualityOracle",
]
