"""
Public read path and audit endpoints.

Every aggregate response goes through gating.public_view() on every
request, so a group that falls below the threshold after a retraction
locks again immediately. Verification results are rendered as an explicit
"verified" / "not_verified" status and never default to verified.
"""

import json
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException

from .chain import EventChain
from .config import PRIVACY_THRESHOLD
from .errors import InvalidArgument, StoreError
from .gating import public_view
from .hashing import content_hash
from .logging_config import audit_log
from .schemas import ChainVerificationResponse, PublicKeyResponse, VerifyRequest, VerifyResponse
from .signing import AggregateSigner
from .stores import SignatureStore, signed_aggregate_from_row
from .util import parse_iso_date, signature_id

VERIFIED = "verified"
NOT_VERIFIED = "not_verified"


def create_app(
    signature_store: SignatureStore,
    chain: Optional[EventChain] = None,
    public_key_info: Optional[Dict[str, Any]] = None,
    threshold: int = PRIVACY_THRESHOLD,
) -> FastAPI:
    """
    Build the API around injected collaborators.

    Args:
        signature_store: Where the nightly job stored signed aggregates
        chain: Event chain to expose for auditing (optional)
        public_key_info: Published key bundle; when given, stored aggregates
            only count as verified if signed by this key
        threshold: k for the privacy gate
    """
    app = FastAPI(title="Pulse Integrity")
    pinned_key = public_key_info["public_key"] if public_key_info else None

    def _check_date(day: str) -> str:
        try:
            return parse_iso_date(day).isoformat()
        except InvalidArgument:
            raise HTTPException(422, "INVALID_DATE")

    def _render(row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            signed = signed_aggregate_from_row(row)
        except (InvalidArgument, KeyError):
            audit_log.verification_failed(str(row.get("signature_id")), "malformed stored record")
            return {
                "signature_id": row.get("signature_id"),
                "locked": True,
                "verification": NOT_VERIFIED,
            }
        view = public_view(signed.record, threshold)
        verified = AggregateSigner.verify_signed_aggregate(signed, pinned_key)
        if not verified:
            audit_log.verification_failed(str(row.get("signature_id")), "signature check failed")
        view["verification"] = VERIFIED if verified else NOT_VERIFIED
        return view

    def _require_chain() -> EventChain:
        if chain is None:
            raise HTTPException(404, "CHAIN_NOT_CONFIGURED")
        return chain

    @app.get("/public-key", response_model=PublicKeyResponse)
    def get_public_key():
        if not public_key_info:
            raise HTTPException(404, "NO_PUBLIC_KEY")
        return public_key_info

    @app.get("/aggregates/{day}")
    def list_aggregates(day: str):
        day = _check_date(day)
        try:
            rows = signature_store.list_for_date(day)
        except StoreError:
            raise HTTPException(503, "STORE_UNAVAILABLE")
        return {
            "date": day,
            "threshold": threshold,
            "aggregates": [_render(row) for row in rows],
        }

    @app.get("/aggregates/{day}/{group_id}")
    def get_aggregate(day: str, group_id: str):
        day = _check_date(day)
        try:
            row = signature_store.get(signature_id(day, group_id))
        except StoreError:
            raise HTTPException(503, "STORE_UNAVAILABLE")
        if not row:
            raise HTTPException(404, "NOT_FOUND")
        return _render(row)

    @app.post("/verify", response_model=VerifyResponse)
    def verify(req: VerifyRequest):
        verified = AggregateSigner.verify(req.record, req.signature, pinned_key)
        try:
            body = dict(req.record)
            body.pop("signature", None)
            digest = content_hash(body)
        except InvalidArgument:
            digest = None
        if not verified:
            audit_log.verification_failed(str(req.record.get("group_id")), "submitted record not verified")
        return VerifyResponse(
            verified=verified,
            status=VERIFIED if verified else NOT_VERIFIED,
            content_hash=digest,
        )

    @app.get("/chain/verify", response_model=ChainVerificationResponse)
    def chain_verify():
        return _require_chain().verify_chain().to_dict()

    @app.get("/chain/stats")
    def chain_stats():
        return _require_chain().stats()

    @app.get("/chain/export")
    def chain_export():
        return json.loads(_require_chain().export())

    @app.get("/chain/events/{event_id}")
    def chain_event(event_id: str):
        event = _require_chain().audit_trail(event_id)
        if event is None:
            raise HTTPException(404, "NOT_FOUND")
        return event.to_dict()

    return app
