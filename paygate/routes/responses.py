from __future__ import annotations

from fastapi import Response

from paygate.services.admission import AdmissionResult


def render(result: AdmissionResult) -> Response:
    """Send the admission payload verbatim so idempotent replays are byte-identical."""
    return Response(
        content=result.payload,
        status_code=result.outcome.http_status,
        media_type="application/json",
    )
