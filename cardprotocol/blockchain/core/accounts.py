from pydantic import BaseModel, Field, field_serializer, field_validator
from typing import Any, Dict, Optional


class Account(BaseModel):
    address: str
    nonce: int = 0

    # Registered contract code name; None for externally owned accounts
    code: Optional[str] = None

    # slot -> 256-bit word; zero words are never stored
    storage: Dict[int, int] = Field(default_factory=dict)

    @field_serializer("storage")
    def _serialize_storage(self, storage: Dict[int, int]) -> Dict[str, str]:
        return {hex(k): hex(v) for k, v in storage.items()}

    @field_validator("storage", mode="before")
    @classmethod
    def _parse_storage(cls, value: Any) -> Dict[int, int]:
        if not isinstance(value, dict):
            return value
        parsed = {}
        for k, v in value.items():
            key = int(k, 0) if isinstance(k, str) else k
            parsed[key] = int(v, 0) if isinstance(v, str) else v
        return parsed

    @property
    def is_contract(self) -> bool:
        return bool(self.code)


class LogEntry(BaseModel):
    """An emitted contract event, queryable from genesis."""
    address: str
    event: str
    args: Dict[str, Any] = Field(default_factory=dict)
    block_number: int
    log_index: int
    tx_hash: Optional[str] = None
