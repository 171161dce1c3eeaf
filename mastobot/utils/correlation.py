from __future__ import annotations


def make_correlation_id(status_id: str | int, account_id: str | int) -> str:
    """Return a stable correlation id tying mention → llm → post.

    Current format: "<statusId>-<accountId>". Keep simple for grepability.
    """
    return f"{status_id}-{account_id}"
