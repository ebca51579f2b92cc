"""Stable identity hash for discovered filings."""

import hashlib

FINGERPRINT_DELIMITER = "-"


def fingerprint(source: str, file_number: str, filing_date: str) -> str:
    """
    Compute the de-duplication key of a filing.

    SHA-256 over ``source-file_number-filing_date``. The same filing
    discovered twice (overlapping scan windows, re-runs) always maps to the
    same 64-character hex digest.

    Example:
        >>> len(fingerprint("ca_sos", "U1", "01/01/2024"))
        64
    """
    payload = FINGERPRINT_DELIMITER.join((source, file_number, filing_date))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
