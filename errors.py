from typing import Dict

# Result codes returned by the recharge provider, with operator-facing hints.
RECHARGE_ERROR_CODE_MAP: Dict[int, Dict[str, str]] = {
    400001: {
        "message": "Invalid request parameters",
        "hint": "Check the recharge payload built from the package snapshot.",
    },
    7212001: {
        "message": "Recharge API is disabled by the provider",
        "hint": "Contact the provider account manager.",
    },
    7212002: {
        "message": "Third-party recharge API is disabled",
        "hint": "Contact the provider account manager.",
    },
    7212003: {
        "message": "Request source IP not authorized",
        "hint": "Add the egress IP to the provider allow-list.",
    },
    7212004: {
        "message": "Recharge account does not exist",
        "hint": "Ask the customer to confirm the target account id.",
    },
    7212005: {
        "message": "Recharge account cannot be recharged",
        "hint": "The target account is blocked on the provider side.",
    },
    7212006: {
        "message": "Reseller account not bound to client_id",
        "hint": "Check RECHARGE_CLIENT_ID against the reseller account.",
    },
    7212008: {
        "message": "Credit amount exceeds upper limit",
        "hint": "Split the package or lower its credit amount.",
    },
    7212009: {
        "message": "Currency not supported",
        "hint": "Check RECHARGE_CURRENCY.",
    },
    7212010: {
        "message": "Order ID is duplicated",
        "hint": "The request id was already used; inspect the provider logs before retrying by hand.",
    },
    7212011: {
        "message": "Insufficient reseller balance",
        "hint": "Top up the reseller balance, then reprocess the order.",
    },
    7212012: {
        "message": "Request too frequent, please wait",
        "hint": "Retried automatically with linear backoff.",
    },
    7212013: {
        "message": "Credit pricing out of range",
        "hint": "Check CREDITS_PER_USD and USD_TO_LOCAL_RATE.",
    },
    7212014: {
        "message": "User area not eligible",
        "hint": "The target account region cannot receive recharges.",
    },
    7212015: {
        "message": "Recharge not supported in this area",
        "hint": "The target account region cannot receive recharges.",
    },
    500001: {
        "message": "Recharge provider internal error",
        "hint": "Retried automatically on a fixed schedule.",
    },
}


def explain_recharge_error(code: int | None) -> Dict[str, str] | None:
    if code is None:
        return None
    return RECHARGE_ERROR_CODE_MAP.get(int(code))


def recharge_error_message(code: int | None, fallback: str | None = None) -> str:
    entry = explain_recharge_error(code)
    if entry:
        return entry["message"]
    if fallback:
        return fallback
    return f"Recharge error: {code}"
