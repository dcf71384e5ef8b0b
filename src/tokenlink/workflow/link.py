"""
Link Workflow orchestrator.

Sequences metadata registration, custom token registration, linking,
manager resolution and role grants into one resumable pipeline, then serves
transfers over the finished link.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional

import structlog

from tokenlink.chain.interface import ChainClient
from tokenlink.chain.web3_client import Web3ChainClient
from tokenlink.config import LinkerConfig, LinkSide, require_address
from tokenlink.errors import (
    InvariantViolationError,
    LinkerError,
    RejectedTransactionError,
)
from tokenlink.its.gateway import GatewayEndpoint, TokenRegistryGateway
from tokenlink.its.transfer import TransferCoordinator
from tokenlink.retry import RetryPolicy, retry_transient
from tokenlink.state.database import CheckpointStore
from tokenlink.token.contract import TokenContract
from tokenlink.token.roles import RoleGrantor
from tokenlink.types import TokenDescriptor, TransferReceipt, TransferRequest, new_link_salt
from tokenlink.workflow.checkpoint import WorkflowCheckpoint, WorkflowStage

logger = structlog.get_logger(__name__)


class LinkWorkflow:
    """
    Orchestrates linking one token across two networks.

    The workflow reads its checkpoint, runs exactly the steps between the
    recorded stage and the requested target, and persists the checkpoint
    after every confirmed step. Transient network failures are retried with
    backoff; rejected transactions halt the run for an operator.

    Usage:
        ```python
        workflow = LinkWorkflow.from_config(config)
        await workflow.initialize()
        try:
            await workflow.run()
            await workflow.transfer(LinkSide.ORIGIN)
        finally:
            await workflow.shutdown()
        ```
    """

    def __init__(
        self,
        config: LinkerConfig,
        origin_chain: ChainClient,
        destination_chain: ChainClient,
        store: Optional[CheckpointStore] = None,
        role_grantor: Optional[RoleGrantor] = None,
        retry_policy: Optional[RetryPolicy] = None,
        salt_factory: Callable[[], str] = new_link_salt,
    ):
        """
        Initialize the workflow.

        Args:
            config: Validated linker configuration
            origin_chain: Chain client for the origin network
            destination_chain: Chain client for the destination network
            store: Checkpoint store (created from config.database_url if not provided)
            role_grantor: Custom role grantor
            retry_policy: Backoff policy for transient failures
            salt_factory: Source of fresh link salts
        """
        self.config = config
        self.chains: Dict[LinkSide, ChainClient] = {
            LinkSide.ORIGIN: origin_chain,
            LinkSide.DESTINATION: destination_chain,
        }

        self.gateway = TokenRegistryGateway({
            config.network(side).name: GatewayEndpoint(
                chain=chain,
                token_service_address=config.network(side).token_service_address,
                token_factory_address=config.network(side).token_factory_address,
            )
            for side, chain in self.chains.items()
        })
        self.tokens: Dict[LinkSide, TokenContract] = {
            side: TokenContract(chain, config.network(side).token_address)
            for side, chain in self.chains.items()
        }
        self.role_grantor = role_grantor or RoleGrantor()
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self.transfer_coordinator = TransferCoordinator(self.gateway, self.retry_policy)

        self._owns_store = store is None
        self.store = store or CheckpointStore(config.database_url)
        self._salt_factory = salt_factory

        self._checkpoint: Optional[WorkflowCheckpoint] = None
        self._descriptors: Dict[LinkSide, TokenDescriptor] = {}
        self._lock = asyncio.Lock()
        self._initialized = False
        self._stop_requested = False
        self.log = logger.bind(link_id=config.link_id)

    @classmethod
    def from_config(
        cls,
        config: LinkerConfig,
        store: Optional[CheckpointStore] = None,
    ) -> "LinkWorkflow":
        """Build a workflow with web3 chain clients for both networks."""
        config.require_link_inputs()
        chains = {
            side: Web3ChainClient(
                config.identity(side),
                confirmation_timeout_seconds=config.confirmation_timeout_seconds,
                poll_interval_seconds=config.poll_interval_seconds,
            )
            for side in LinkSide
        }
        return cls(config, chains[LinkSide.ORIGIN], chains[LinkSide.DESTINATION], store=store)

    @property
    def checkpoint(self) -> WorkflowCheckpoint:
        if self._checkpoint is None:
            raise RuntimeError("Workflow not initialized")
        return self._checkpoint

    async def initialize(self) -> None:
        """
        Validate configuration, connect, and load the checkpoint.

        Raises:
            ConfigurationError: Before any network call, if inputs are missing
            InvariantViolationError: If the recorded token id no longer matches
                what the ledger derives from the recorded salt
            TransientNetworkError: If the token id cannot be read after retries
        """
        if self._initialized:
            return

        self.config.require_link_inputs()

        if self._owns_store:
            await self.store.connect()

        for chain in self.chains.values():
            await chain.connect()

        self._checkpoint = await self.store.load_or_create(self.config.link_id)
        self.log.info(
            "workflow_initialized",
            stage=self._checkpoint.stage.value,
            origin=self.config.origin.name,
            destination=self.config.destination.name,
        )

        if self._checkpoint.token_id is not None:
            try:
                await retry_transient(self._verify_token_id, self.retry_policy, "verify_token_id")
            except LinkerError as e:
                await self._fail("verify_token_id", e)
                raise

        self._initialized = True

    async def shutdown(self) -> None:
        """Disconnect chain clients and the store (if owned)."""
        for chain in self.chains.values():
            await chain.disconnect()
        if self._owns_store:
            await self.store.disconnect()
        self._initialized = False
        self.log.info("workflow_shutdown")

    def stop(self) -> None:
        """Request a stop. The step in progress always runs to completion."""
        self._stop_requested = True
        self.log.info("workflow_stopping")

    async def run(self, target: WorkflowStage = WorkflowStage.READY) -> WorkflowCheckpoint:
        """
        Advance the link to ``target``.

        Returns:
            The checkpoint after the last completed step

        Raises:
            RejectedTransactionError: A step was rejected by the ledger
            TransientNetworkError: A step kept failing after all retries
            InvariantViolationError: Recorded and on-chain state diverged
        """
        if not self._initialized:
            await self.initialize()

        self._stop_requested = False
        steps = {
            WorkflowStage.INIT: ("register_metadata", lambda: self._register_metadata(target)),
            WorkflowStage.METADATA_REGISTERED_ORIGIN: ("register_metadata", lambda: self._register_metadata(target)),
            WorkflowStage.METADATA_REGISTERED_DEST: ("register_custom_token", self._register_custom_token),
            WorkflowStage.CUSTOM_TOKEN_REGISTERED: ("link_token", self._link_token),
            WorkflowStage.LINKED: ("resolve_managers", self._resolve_managers),
            WorkflowStage.MANAGER_RESOLVED: ("grant_roles", self._grant_roles),
            WorkflowStage.ROLES_GRANTED: ("finalize", self._finalize),
        }

        self.log.info("workflow_run", stage=self.checkpoint.stage.value, target=target.value)

        while self.checkpoint.stage.is_before(target):
            if self._stop_requested:
                self.log.info("workflow_stopped", stage=self.checkpoint.stage.value)
                break

            stage = self.checkpoint.stage
            name, operation = steps[stage]
            await self._run_step(name, operation)

            if self.checkpoint.stage is stage:
                raise InvariantViolationError(f"Step {name} completed without advancing from {stage.value}")

        if self.checkpoint.stage is WorkflowStage.READY:
            self.log.info(
                "workflow_ready",
                token_id=self.checkpoint.token_id,
                salt=self.checkpoint.salt,
                managers={n: h.address for n, h in self.checkpoint.managers.items()},
            )
        return self.checkpoint

    async def _run_step(self, name: str, operation: Callable[[], Awaitable[None]]) -> None:
        """
        Run one step to completion.

        A ledger mutation cannot be withdrawn once submitted, so if the calling
        task is cancelled mid-step the step (and its checkpoint write) still
        finishes before the cancellation propagates.
        """
        task = asyncio.ensure_future(self._execute_step(name, operation))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                self.log.warning("cancel_deferred_until_step_completes", step=name)
                await asyncio.wait({task})
                if not task.cancelled() and task.exception() is not None:
                    self.log.error("step_failed_during_cancel", step=name, error=str(task.exception()))
            raise

    async def _execute_step(self, name: str, operation: Callable[[], Awaitable[None]]) -> None:
        self.log.info("step_started", step=name, stage=self.checkpoint.stage.value)
        try:
            await retry_transient(operation, self.retry_policy, name)
        except LinkerError as e:
            await self._fail(name, e)
            raise
        self.log.info("step_completed", step=name, stage=self.checkpoint.stage.value)

    async def _fail(self, step: str, error: LinkerError) -> None:
        async with self._lock:
            self.checkpoint.mark_failed(step, str(error))
            await self.store.save_checkpoint(self.checkpoint)
        error.attach_context(step, self.checkpoint.stage.value, self.checkpoint.committed())
        self.log.error(
            "step_halted",
            step=step,
            stage=self.checkpoint.stage.value,
            error_type=type(error).__name__,
            error=error.message,
            committed=error.committed,
        )

    async def _persist(self) -> None:
        async with self._lock:
            await self.store.save_checkpoint(self.checkpoint)

    async def _descriptor(self, side: LinkSide) -> TokenDescriptor:
        if side not in self._descriptors:
            self._descriptors[side] = await self.tokens[side].describe()
        return self._descriptors[side]

    async def _verify_token_id(self) -> None:
        """Re-derive the token id from the recorded salt and compare."""
        if self.checkpoint.salt is None:
            raise InvariantViolationError(
                f"Checkpoint {self.checkpoint.link_id} records a token id but no salt"
            )
        minter = self.chains[LinkSide.ORIGIN].address
        resolved = await self.gateway.resolve_token_id(minter, self.checkpoint.salt, network=self.config.origin.name)
        if resolved != self.checkpoint.token_id:
            raise InvariantViolationError(
                f"Token id on {self.config.origin.name} is {resolved}, "
                f"checkpoint records {self.checkpoint.token_id}"
            )

    # Steps

    async def _register_metadata(self, target: WorkflowStage) -> None:
        """Register metadata on both networks concurrently, joining both before returning."""
        origin = self.config.origin.name
        destination = self.config.destination.name

        sides = [LinkSide.ORIGIN]
        if target is not WorkflowStage.METADATA_REGISTERED_ORIGIN:
            sides.append(LinkSide.DESTINATION)

        pending = [
            side for side in sides
            if self.config.network(side).name not in self.checkpoint.metadata_registered
        ]

        results = await asyncio.gather(
            *(self._register_metadata_on(side) for side in pending),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            # A rejection is final; a transient failure lets the step be retried
            rejected = [e for e in errors if isinstance(e, RejectedTransactionError)]
            raise (rejected or errors)[0]

        if not pending:
            # Flags were recorded by an earlier run; make sure the stage reflects them
            async with self._lock:
                self.checkpoint.record_metadata(origin, origin, destination)
                await self.store.save_checkpoint(self.checkpoint)

    async def _register_metadata_on(self, side: LinkSide) -> None:
        token = await self._descriptor(side)
        await self.gateway.register_metadata(
            token,
            min_gas_amount=self.config.metadata_min_gas_amount,
            value=self.config.metadata_value,
        )
        async with self._lock:
            self.checkpoint.record_metadata(token.network, self.config.origin.name, self.config.destination.name)
            await self.store.save_checkpoint(self.checkpoint)

    async def _register_custom_token(self) -> None:
        origin = self.config.origin
        minter = self.chains[LinkSide.ORIGIN].address

        if self.checkpoint.salt is None:
            salt = self._salt_factory()
            self.checkpoint.record_salt(salt)
            await self._persist()
            self.log.info("link_salt_generated", salt=salt)
        else:
            salt = self.checkpoint.salt
            token_id = await self.gateway.resolve_token_id(minter, salt, network=origin.name)
            if await self.gateway.is_registered(token_id, origin.name):
                # Submitted by an earlier run that stopped before recording it
                self.log.warning("custom_token_already_registered", salt=salt, token_id=token_id)
                self.checkpoint.mark_custom_token_registered(token_id)
                await self._persist()
                return

        token_id = await self.gateway.register_custom_token(
            salt,
            await self._descriptor(LinkSide.ORIGIN),
            origin.manager_mode,
            minter,
            value=self.config.registration_value,
        )
        self.checkpoint.mark_custom_token_registered(token_id)
        await self._persist()

    async def _link_token(self) -> None:
        origin = self.config.origin
        destination = self.config.destination

        if await self.gateway.is_registered(self.checkpoint.token_id, destination.name):
            self.log.warning("token_already_linked", token_id=self.checkpoint.token_id)
        else:
            if self.checkpoint.link_attempted_at is not None:
                # An earlier linkToken may be confirmed but not yet relayed; resubmitting pays gas again
                self.log.warning(
                    "link_token_resubmitting",
                    token_id=self.checkpoint.token_id,
                    first_attempted_at=self.checkpoint.link_attempted_at.isoformat(),
                )
            else:
                self.checkpoint.record_link_attempt()
                await self._persist()
            await self.gateway.link_token(
                self.checkpoint.salt,
                destination.name,
                await self._descriptor(LinkSide.DESTINATION),
                destination.manager_mode,
                self.chains[LinkSide.ORIGIN].address,
                self.config.link_gas_value,
                network=origin.name,
            )

        self.checkpoint.mark_linked()
        await self._persist()

    async def _resolve_managers(self) -> None:
        for side in LinkSide:
            settings = self.config.network(side)
            if settings.name in self.checkpoint.managers:
                continue
            handle = await self.gateway.resolve_manager(
                self.checkpoint.token_id,
                settings.name,
                settings.manager_mode,
                require_deployed=self.config.require_manager_code,
            )
            self.checkpoint.record_manager(handle)
            await self._persist()

        self.checkpoint.mark_managers_resolved()
        await self._persist()

    async def _grant_roles(self) -> None:
        """Give mint/burn capability to the manager on every mint-burn end of the link."""
        for side in LinkSide:
            settings = self.config.network(side)
            if not settings.manager_mode.is_mint_burn:
                continue

            network = settings.name
            manager = self.checkpoint.managers[network]

            async def record(role: str, network: str = network) -> None:
                async with self._lock:
                    self.checkpoint.record_role(network, role)
                    await self.store.save_checkpoint(self.checkpoint)

            await self.role_grantor.grant_mint_burn(
                self.tokens[side],
                manager.address,
                already_granted=self.checkpoint.roles_granted.get(network, []),
                on_granted=record,
            )

        self.checkpoint.mark_roles_granted()
        await self._persist()

    async def _finalize(self) -> None:
        self.checkpoint.mark_ready()
        await self._persist()

    # Operator actions

    async def acknowledge(self, stage: WorkflowStage) -> WorkflowCheckpoint:
        """
        Advance a halted checkpoint after the operator verified the step on-chain.

        Raises:
            InvariantViolationError: If ``stage`` is behind the current stage, or
                needs a token id that cannot be derived from the checkpoint
        """
        if not self._initialized:
            await self.initialize()

        checkpoint = self.checkpoint
        origin = self.config.origin.name
        destination = self.config.destination.name

        if stage.is_at_least(WorkflowStage.METADATA_REGISTERED_ORIGIN) and origin not in checkpoint.metadata_registered:
            checkpoint.metadata_registered.append(origin)
        if stage.is_at_least(WorkflowStage.METADATA_REGISTERED_DEST) and destination not in checkpoint.metadata_registered:
            checkpoint.metadata_registered.append(destination)

        if stage.is_at_least(WorkflowStage.CUSTOM_TOKEN_REGISTERED) and checkpoint.token_id is None:
            if checkpoint.salt is None:
                raise InvariantViolationError("Cannot acknowledge registration: no salt recorded")
            checkpoint.token_id = await self.gateway.resolve_token_id(
                self.chains[LinkSide.ORIGIN].address, checkpoint.salt, network=origin
            )

        if stage.is_at_least(WorkflowStage.MANAGER_RESOLVED):
            missing = [
                self.config.network(side).name for side in LinkSide
                if self.config.network(side).name not in checkpoint.managers
            ]
            if missing:
                raise InvariantViolationError(
                    f"Cannot acknowledge {stage.value}: managers unresolved on {', '.join(missing)}"
                )

        checkpoint.advance(stage)
        checkpoint.last_step = f"acknowledge:{stage.value}"
        checkpoint.last_error = None
        await self._persist()
        self.log.warning("stage_acknowledged", stage=stage.value)
        return checkpoint

    # Transfers

    async def transfer(
        self,
        source: LinkSide = LinkSide.ORIGIN,
        receiver: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> TransferReceipt:
        """
        Move tokens across the finished link.

        Args:
            source: Side the tokens leave from
            receiver: Receiver on the other side (config.receiver_address if not given)
            amount: Amount in base units (config.transfer_amount if not given)

        Raises:
            InvariantViolationError: If the link is not READY
            ConfigurationError: If the receiver is not a valid address
            RejectedTransactionError: If the approval or the transfer is rejected
        """
        if not self._initialized:
            await self.initialize()

        if self.checkpoint.stage is not WorkflowStage.READY:
            raise InvariantViolationError(
                f"Link {self.checkpoint.link_id} is at {self.checkpoint.stage.value}; "
                "run the workflow to READY before transferring"
            )

        if receiver is None or amount is None:
            self.config.require_transfer_inputs()
        receiver = require_address(receiver or self.config.receiver_address, "receiver")

        token = await self._descriptor(source)
        if amount is None:
            amount = token.to_base_units(self.config.transfer_amount)

        source_network = self.config.network(source).name
        request = TransferRequest(
            token_id=self.checkpoint.token_id,
            source_network=source_network,
            destination_network=self.config.network(source.other).name,
            receiver=receiver,
            amount=amount,
            gas_budget=self.config.transfer_gas_value,
        )

        step = f"transfer:{source_network}"
        try:
            receipt = await self.transfer_coordinator.transfer(
                request,
                self.tokens[source],
                self.checkpoint.managers.get(source_network),
            )
        except LinkerError as e:
            e.attach_context(step, self.checkpoint.stage.value, self.checkpoint.committed())
            self.log.error("transfer_failed", error_type=type(e).__name__, error=e.message)
            raise

        await self.store.save_transfer(self.checkpoint.link_id, receipt)
        self.log.info("transfer_recorded", **receipt.to_dict())
        return receipt
