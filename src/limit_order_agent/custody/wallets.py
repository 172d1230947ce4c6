"""Agent wallet provisioning and signer resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from eth_account import Account

from limit_order_agent.custody.keystore import EncryptedKey, KeyCipher
from limit_order_agent.storage.repos import AccountRepository, AgentAccountDTO

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

    from limit_order_agent.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentSigner:
    """A resolved signing identity for one owner wallet."""

    agent_address: str
    account: LocalAccount
    risk_check_enabled: bool = False


class SignerResolver(Protocol):
    """Maps an owner wallet to its agent signer, or None for notify-only."""

    async def resolve(self, wallet_address: str) -> AgentSigner | None: ...


class WalletCustody:
    """Creates agent wallets and decrypts their keys on demand.

    Args:
        db: Database manager for the ``agent_accounts`` table.
        cipher: Key cipher bound to the custody passphrase. Without one,
            accounts cannot be created and :meth:`resolve` always returns
            None.
        dry_run: Resolve no signers, so every triggered order goes down
            the notify-only path.

    Example:
        ```python
        custody = WalletCustody(db, KeyCipher(passphrase))
        account = await custody.create_account("0xabc...")
        signer = await custody.resolve("0xabc...")
        ```
    """

    def __init__(self, db: DatabaseManager, cipher: KeyCipher | None, *, dry_run: bool = False) -> None:
        self._db = db
        self._cipher = cipher
        self._dry_run = dry_run

    async def create_account(self, wallet_address: str) -> AgentAccountDTO:
        """Provision an agent wallet for ``wallet_address``.

        Idempotent: an existing account is returned unchanged.

        Raises:
            RuntimeError: If no encryption key is configured.
        """
        async with self._db.get_async_session() as session:
            repo = AccountRepository(session)
            existing = await repo.get(wallet_address)
            if existing is not None:
                return existing

            if self._cipher is None:
                raise RuntimeError("Cannot create agent accounts without CUSTODY_ENCRYPTION_KEY")

            agent = Account.create()
            envelope = self._cipher.encrypt(agent.key.hex())
            created = await repo.create(
                AgentAccountDTO(
                    wallet_address=wallet_address,
                    agent_address=agent.address,
                    agent_key_enc=envelope.to_json(),
                )
            )
        logger.info("Created agent account %s for wallet %s", created.agent_address, created.wallet_address)
        return created

    async def get_account(self, wallet_address: str) -> AgentAccountDTO | None:
        async with self._db.get_async_session() as session:
            return await AccountRepository(session).get(wallet_address)

    async def resolve(self, wallet_address: str) -> AgentSigner | None:
        """Return the signer for ``wallet_address`` when it may auto-execute.

        Raises:
            KeyDecryptionError: If the stored key cannot be decrypted.
        """
        if self._dry_run or self._cipher is None:
            return None

        account = await self.get_account(wallet_address)
        if account is None or not account.auto_execute:
            return None

        private_key = self._cipher.decrypt(EncryptedKey.from_json(account.agent_key_enc))
        local = Account.from_key(private_key)
        if local.address.lower() != account.agent_address.lower():
            logger.error("Decrypted key does not match agent address for wallet %s", account.wallet_address)
            return None
        return AgentSigner(
            agent_address=local.address,
            account=local,
            risk_check_enabled=account.ai_risk_check,
        )
