"""
Transfer Coordinator - approval followed by an interchain transfer.
"""

from typing import Optional

import structlog

from tokenlink.errors import InvariantViolationError, RejectedTransactionError
from tokenlink.its.gateway import TokenRegistryGateway
from tokenlink.retry import RetryPolicy, retry_transient
from tokenlink.token.contract import TokenContract
from tokenlink.types import ManagerHandle, TransferReceipt, TransferRequest

logger = structlog.get_logger(__name__)


class TransferCoordinator:
    """
    Moves tokens from one linked network to the other.

    The source-network manager is approved for the amount, then the transfer
    is submitted through the token service. Each of the two calls is retried
    on its own: once the approval is confirmed, a transient failure of the
    transfer retries only the transfer, so balance and allowance are never
    re-checked against state the transfer itself may already have changed.
    An approval that succeeded is left in place if the transfer fails, so a
    later transfer reuses it.
    """

    def __init__(self, gateway: TokenRegistryGateway, retry_policy: Optional[RetryPolicy] = None):
        self.gateway = gateway
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=1)

    async def transfer(
        self,
        request: TransferRequest,
        token: TokenContract,
        manager: Optional[ManagerHandle],
    ) -> TransferReceipt:
        """
        Execute one transfer.

        Args:
            request: What to move and where
            token: Token contract on the source network
            manager: Resolved manager for the source network

        Returns:
            Receipt with the approval and transfer transaction hashes

        Raises:
            InvariantViolationError: If no manager is resolved for the source network
            RejectedTransactionError: If the sender's balance is insufficient or
                the ledger rejects either call
            TransientNetworkError: If either call still fails after retries
        """
        if manager is None or manager.network != request.source_network:
            raise InvariantViolationError(
                f"No resolved token manager on {request.source_network}; link the token first"
            )

        sender = token.chain.address
        approval_tx_hash = await retry_transient(
            lambda: self._approve(request, token, manager, sender),
            self.retry_policy,
            "approve",
        )

        receipt = await retry_transient(
            lambda: self.gateway.interchain_transfer(
                token_id=request.token_id,
                source_network=request.source_network,
                destination_network=request.destination_network,
                receiver=request.receiver,
                amount=request.amount,
                gas_value=request.gas_budget,
            ),
            self.retry_policy,
            "interchain_transfer",
        )

        return TransferReceipt(
            request=request,
            approval_tx_hash=approval_tx_hash,
            transfer_tx_hash=receipt.tx_hash,
        )

    async def _approve(
        self,
        request: TransferRequest,
        token: TokenContract,
        manager: ManagerHandle,
        sender: str,
    ) -> Optional[str]:
        balance = await token.balance_of(sender)
        if balance < request.amount:
            logger.error(
                "transfer_insufficient_balance",
                network=request.source_network,
                balance=balance,
                amount=request.amount,
            )
            raise RejectedTransactionError(
                f"insufficient balance: {sender} holds {balance}, transfer needs {request.amount}"
            )

        allowance = await token.allowance(sender, manager.address)
        if allowance >= request.amount:
            logger.info(
                "allowance_reused",
                network=request.source_network,
                spender=manager.address,
                allowance=allowance,
            )
            return None

        receipt = await token.approve(manager.address, request.amount)
        return receipt.tx_hash
