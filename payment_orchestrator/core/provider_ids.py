"""Provider id normalization shared by the router and the webhook registry."""
from typing import List

WRAPPED_PROVIDER_PREFIX = "pp_"


def provider_id_candidates(provider_id: str) -> List[str]:
    """
    Expand a provider id into lookup candidates, longest first.

    Wrapped ids such as ``pp_razorpay_razorpay`` expand to the full id, the
    id without the wrapper prefix, and its first and last segments.

    Args:
        provider_id: Provider id as configured or stored

    Returns:
        List[str]: De-duplicated lower-case candidates
    """
    normalized = (provider_id or "").strip().lower()
    if not normalized:
        return []

    candidates = [normalized]
    if normalized.startswith(WRAPPED_PROVIDER_PREFIX):
        body = normalized[len(WRAPPED_PROVIDER_PREFIX):]
        segments = [segment for segment in body.split("_") if segment]
        candidates.append(body)
        if segments:
            candidates.extend([segments[0], segments[-1]])

    seen = set()
    unique = []
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.add(candidate)
            unique.append(candidate)
    return unique
