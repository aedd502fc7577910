from __future__ import annotations


IDENTITY_SEPARATOR = "|"


def identity_key(uid: str, override_id: str = "") -> str:
    """Correlation key between a document event and the store event created for it.

    Standalone events and unexpanded masters are keyed by UID alone; exceptions and
    expanded occurrences by ``UID|occurrence-id``. Only document values feed the key,
    so it is stable across runs for the same logical occurrence.
    """
    if override_id:
        return f"{uid}{IDENTITY_SEPARATOR}{override_id}"
    return uid
