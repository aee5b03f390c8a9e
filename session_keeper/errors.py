"""
Failure kinds for session operations and best-effort diagnostics from provider responses.
No tokens are ever included in a message.
"""
from dataclasses import dataclass

from session_keeper.gateway import GatewayResult

TRANSPORT = "transport"
PROVIDER_REJECTED = "provider_rejected"
PROTOCOL_VIOLATION = "protocol_violation"
SCOPE_DRIFT = "scope_drift"
PROTOCOL_MISUSE = "protocol_misuse"


@dataclass(frozen=True)
class Failure:
    kind: str
    operation: str
    message: str

    def as_dict(self) -> dict:
        return {"kind": self.kind, "operation": self.operation, "message": self.message}


def classify(result: GatewayResult) -> str:
    """Transport for aborted/unreachable requests, provider_rejected for error statuses."""
    if result.status_code is None:
        return TRANSPORT
    return PROVIDER_REJECTED


def describe(result: GatewayResult) -> str:
    """Extract a human readable message; providers sometimes send a JSON error payload."""
    if result.error:
        return result.error
    payload = result.json()
    for key in ("message", "error_description", "error"):
        value = payload.get(key)
        if value:
            return str(value)
    if result.text:
        return result.text[:200]
    return f"HTTP {result.status_code}"
