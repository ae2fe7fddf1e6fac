from __future__ import annotations

import logging
import re
import uuid

from sqlalchemy.orm import Session

from ghostcrm.telecom.context import TelecomContext
from ghostcrm.telecom.errors import InvalidPhoneNumberError, NumberNotFoundError
from ghostcrm.telecom.selection import build_adapter, get_provider_account


logger = logging.getLogger("ghostcrm.telecom.verification")

_E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")


def normalize_e164(value: str) -> str:
    candidate = re.sub(r"[\s().-]", "", value)
    if not _E164_RE.match(candidate):
        raise InvalidPhoneNumberError(f"'{value}' is not an E.164 number")
    return candidate


def verify_ownership(
    session: Session,
    tctx: TelecomContext,
    organization_id: uuid.UUID,
    provider_account_id: uuid.UUID,
    e164: str,
) -> bool:
    """Confirm the vendor account behind ``provider_account_id`` owns ``e164``.

    Returns True when the vendor lists the number. Raises
    ``NumberNotFoundError`` when it does not; callers must not register the
    number as unverified in that case.
    """
    account = get_provider_account(session, organization_id, provider_account_id)
    adapter = build_adapter(session, tctx, account)
    try:
        listed = adapter.lookup_numbers(e164)
    finally:
        adapter.close()
    if not any(number == e164 for number in listed):
        logger.warning(
            "phone_number.ownership_rejected",
            extra={
                "organization_id": str(organization_id),
                "provider": account.provider_id,
                "provider_account_id": str(account.id),
            },
        )
        raise NumberNotFoundError(f"{e164} is not a number on this {account.provider_id} account")
    return True
