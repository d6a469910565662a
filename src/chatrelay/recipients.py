"""Recipient address normalization."""

from __future__ import annotations

import re

from loguru import logger

from chatrelay.errors import ValidationError

COUNTRY_CODE = "34"
NATIONAL_NUMBER_LENGTH = 9
DOMESTIC_MOBILE_PREFIXES = ("6", "7", "9")

_SEPARATORS = re.compile(r"[\s\-().]")
_VALID = re.compile(rf"^{COUNTRY_CODE}[0-9]{{{NATIONAL_NUMBER_LENGTH}}}$")


def normalize_recipient(raw: str | int) -> str:
    """Return the recipient as country code plus national number, digits only.

    >>> normalize_recipient("612 345 678")
    '34612345678'
    """
    cleaned = _SEPARATORS.sub("", str(raw)).removeprefix("+")

    if cleaned.startswith("00" + COUNTRY_CODE):
        cleaned = cleaned[2:]
    elif not cleaned.startswith(COUNTRY_CODE) and cleaned.startswith(DOMESTIC_MOBILE_PREFIXES):
        cleaned = COUNTRY_CODE + cleaned

    if not _VALID.match(cleaned):
        raise ValidationError(f"invalid recipient number: {raw}")

    logger.debug("recipient.normalized raw={} formatted={}", raw, cleaned)
    return cleaned
