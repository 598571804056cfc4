"""
Credential vault: hands out decrypted credentials for one attempt.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .crypto import SealError, SecretBox
from .errors import CredentialError
from .models import Caller, ResolvedCredential
from .store.base import PlanStore

logger = logging.getLogger(__name__)


class CredentialVault(Protocol):
    async def resolve(self, credential_id: str, caller: Caller) -> ResolvedCredential: ...


class StoreCredentialVault:
    """
    Decrypts sealed credential rows with the provisioned engine key.

    The owner may read their own credentials; the service identity may read any.
    """

    def __init__(self, store: PlanStore, box: SecretBox) -> None:
        self._store = store
        self._box = box

    async def resolve(self, credential_id: str, caller: Caller) -> ResolvedCredential:
        row = await self._store.get_credential(credential_id)
        if row is None:
            raise CredentialError(f"Credential {credential_id} not found")
        if not caller.may_act_for(row.user_id):
            raise CredentialError(f"Credential {credential_id} is not accessible to this caller")
        try:
            email = self._box.open(row.email_enc)
            password = self._box.open(row.password_enc)
            cvv = self._box.open(row.cvv_enc) if row.cvv_enc else None
        except SealError as e:
            raise CredentialError(f"Credential {credential_id} could not be decrypted: {e}") from e
        return ResolvedCredential(alias=row.alias, email=email, password=password, cvv=(cvv or None))
