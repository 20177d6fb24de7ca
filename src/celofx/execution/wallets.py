"""Selection of the wallet an execution is sent from."""

import logging
from typing import Callable, Optional

from eth_account.signers.local import LocalAccount

from celofx.chain.client import ChainClient
from celofx.chain.signing import derive_user_wallet, load_account
from celofx.security.auth import Authorized

logger = logging.getLogger(__name__)


class WalletResolver:
    """Maps an authenticated caller to a signing chain client.

    Trusted agent requests execute from the agent wallet. Wallet-signed
    requests execute from the caller's own derived wallet, never from the
    agent's funds.
    """

    def __init__(
        self,
        chain_factory: Callable[[LocalAccount], ChainClient],
        agent_private_key: Optional[str] = None,
        user_wallet_secret: Optional[str] = None,
    ):
        self.chain_factory = chain_factory
        self.agent_private_key = agent_private_key
        self.user_wallet_secret = user_wallet_secret

    def account_for(self, authorized: Authorized) -> LocalAccount:
        if authorized.is_agent:
            return load_account(self.agent_private_key)
        return derive_user_wallet(authorized.identity, self.user_wallet_secret)

    def resolve(self, authorized: Authorized) -> ChainClient:
        account = self.account_for(authorized)
        logger.debug(f"Executing for {authorized.identity} from {account.address}")
        return self.chain_factory(account)

    def agent_chain(self) -> ChainClient:
        """Chain client signing as the agent (vault custody) wallet."""
        return self.chain_factory(load_account(self.agent_private_key))
