from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class VerifyRequest(BaseModel):
    record: Dict[str, Any]
    signature: Dict[str, Any]


class VerifyResponse(BaseModel):
    verified: bool
    status: str
    content_hash: Optional[str] = None


class ChainVerificationResponse(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    first_invalid_index: Optional[int] = None
    total_events: int = 0


class PublicKeyResponse(BaseModel):
    key_id: str
    algorithm: str
    public_key: str
    fingerprint: str
