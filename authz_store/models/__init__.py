"""ORM model exports."""

from authz_store.models.account import ACCOUNT_STATUS_ACTIVE, Account
from authz_store.models.client import RegisteredClient

__all__ = ["ACCOUNT_STATUS_ACTIVE", "Account", "RegisteredClient"]
