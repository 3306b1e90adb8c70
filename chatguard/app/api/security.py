"""Security reporting and maintenance endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from chatguard.app.api.deps import AttestationDep, require_admin

router = APIRouter(prefix="/v1/security", tags=["security"])


@router.get("/stats")
async def security_stats(attestation: AttestationDep) -> dict[str, int]:
    """Counters derived from the security event log."""
    return await attestation.get_security_stats()


@router.get("/events")
async def security_events(
    attestation: AttestationDep,
    limit: int = Query(default=100, ge=1, le=1000),
) -> dict[str, Any]:
    """Most recent security events, oldest first."""
    entries = (await attestation.event_log.entries())[-limit:]
    return {
        "count": len(entries),
        "events": [entry.to_dict() for entry in entries],
    }


@router.delete("/token-cache", dependencies=[Depends(require_admin)])
async def clear_token_cache(attestation: AttestationDep) -> dict[str, str]:
    await attestation.clear_cache()
    return {"status": "cleared"}
