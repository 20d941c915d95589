"""
clmm-keeper Core: Chain Gateway

The only component that talks to the chain.

Read side: entity discovery through creation events, object reads over
JSON-RPC and strict decoding into PositionSnapshot.

Write side: the ActionRequest payload goes to the transaction-builder
sidecar, which returns unsigned TransactionData bytes for the ordered steps.
The keeper signs them with the operator key and executes them as one
transaction. In DRY_RUN nothing is built or submitted.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import requests

from core.actions import ActionRequest, ActionResult
from core.exceptions import (
    ActionFailure,
    ConfigurationError,
    PreconditionError,
    SnapshotValidationError,
    TransientChainError,
)
from core.executor import now_ms as wall_clock_ms
from core.snapshot import EntityKind, PositionSnapshot
from core.snapshot_decoder import RawMoveObject, decode_entity_fields, decode_snapshot
from infra.rpc_client import RpcResponseError, SuiRpcClient

logger = logging.getLogger(__name__)

CREATION_EVENTS = {
    EntityKind.VAULT: ("cycling_vault::VaultCreated", "vault_id"),
    EntityKind.REGISTERED_POSITION: ("lp_registry::PositionRegistered", "registry_id"),
}

POSITION_FIELD_NAME = "position"


def normalize_address(address: Optional[str]) -> str:
    text = (address or "").lower()
    if text.startswith("0x"):
        text = text[2:]
    return "0x" + text.zfill(64)


class ChainGateway(ABC):
    """Boundary between the keeper core and a chain."""

    @abstractmethod
    async def fetch_all_tracked_entity_ids(self, collection) -> List[str]:
        """Ids of every entity in a tracked collection."""

    @abstractmethod
    async def fetch_snapshot(self, entity_id: str) -> PositionSnapshot:
        """Fresh snapshot. Raises SnapshotValidationError or TransientChainError."""

    @abstractmethod
    async def submit_action(self, request: ActionRequest) -> ActionResult:
        """Execute all steps of a request atomically."""

    @abstractmethod
    async def verify_operator_authorization(self, address: str) -> None:
        """Raise ConfigurationError unless `address` may operate every collection."""


class SuiChainGateway(ChainGateway):
    """ChainGateway over Sui JSON-RPC and a transaction-builder sidecar."""

    def __init__(
        self,
        rpc: SuiRpcClient,
        collections: Sequence,
        mode: str = "DRY_RUN",
        signer=None,
        tx_builder_url: Optional[str] = None,
        tx_builder_timeout: float = 30.0,
        clock=wall_clock_ms,
    ):
        self.rpc = rpc
        self.collections = tuple(collections)
        self.mode = mode
        self.signer = signer
        self.tx_builder_url = tx_builder_url
        self.tx_builder_timeout = tx_builder_timeout
        self.clock = clock

        if self.mode == "LIVE" and (self.signer is None or not self.tx_builder_url):
            raise ConfigurationError("LIVE mode requires an operator signer and tx_builder_url")

    # Read side

    async def fetch_all_tracked_entity_ids(self, collection) -> List[str]:
        return await asyncio.to_thread(self._list_entity_ids, collection)

    def _list_entity_ids(self, collection) -> List[str]:
        event_suffix, id_key = CREATION_EVENTS[collection.kind]
        event_type = f"{collection.package_id}::{event_suffix}"

        ids: List[str] = []
        seen = set()
        for event in self.rpc.iter_events(event_type):
            parsed = event.get("parsedJson") or {}
            entity_id = parsed.get(id_key)
            if entity_id and entity_id not in seen:
                seen.add(entity_id)
                ids.append(entity_id)
        logger.debug(f"{collection.name}: {len(ids)} entities from {event_type}")
        return ids

    async def fetch_snapshot(self, entity_id: str) -> PositionSnapshot:
        return await asyncio.to_thread(self._fetch_snapshot, entity_id, self.clock())

    def _tracked_package(self, object_type: str) -> bool:
        return any(object_type.startswith(f"{c.package_id}::") for c in self.collections)

    def _fetch_snapshot(self, entity_id: str, now: int) -> PositionSnapshot:
        entity = RawMoveObject.from_rpc(self.rpc.get_object(entity_id), entity_id)
        if not self._tracked_package(entity.type):
            raise SnapshotValidationError(entity_id, f"belongs to an untracked package ({entity.type})")

        kind, fields = decode_entity_fields(entity)

        try:
            pool = RawMoveObject.from_rpc(self.rpc.get_object(fields.pool_id), fields.pool_id)
        except SnapshotValidationError as exc:
            raise SnapshotValidationError(entity_id, f"pool {fields.pool_id}: {exc.reason}") from exc

        position = None
        if kind == EntityKind.REGISTERED_POSITION or fields.has_position:
            data = self.rpc.get_dynamic_field_object(entity_id, POSITION_FIELD_NAME)
            if data:
                position = RawMoveObject.from_rpc(data, entity_id)
            elif kind == EntityKind.VAULT:
                logger.warning(f"Vault {entity_id} flags has_position but stores none")

        return decode_snapshot(entity, pool, position, now)

    async def verify_operator_authorization(self, address: str) -> None:
        await asyncio.to_thread(self._verify_operator, address)

    def _verify_operator(self, address: str) -> None:
        operator = normalize_address(address)
        for collection in self.collections:
            if not collection.object_id:
                raise ConfigurationError(f"{collection.name}: config object id is not set")
            data = self.rpc.get_object(collection.object_id)
            if not data:
                raise ConfigurationError(f"{collection.name}: config object {collection.object_id} not found")
            fields = (data.get("content") or {}).get("fields") or {}
            allowed = {normalize_address(fields.get(role)) for role in ("executor", "admin") if fields.get(role)}
            if operator not in allowed:
                raise ConfigurationError(
                    f"Operator {address} is neither executor nor admin of {collection.name} "
                    f"({collection.object_id})"
                )
            logger.info(f"Operator authorized for {collection.name}")

    # Write side

    async def submit_action(self, request: ActionRequest) -> ActionResult:
        if self.mode != "LIVE":
            return self._dry_run(request)
        return await asyncio.to_thread(self._submit_live, request)

    def _base_result(self, request: ActionRequest, started: int) -> ActionResult:
        return ActionResult(
            entity_id=request.entity_id,
            action=request.action,
            success=True,
            started_at_ms=started,
            new_tick_lower=request.plan.new_tick_lower if request.plan else None,
            new_tick_upper=request.plan.new_tick_upper if request.plan else None,
        )

    def _dry_run(self, request: ActionRequest) -> ActionResult:
        started = self.clock()
        logger.info(
            "[DRY_RUN] %s %s: %s",
            request.action.value,
            request.snapshot.short_id,
            " -> ".join(step.value for step in request.steps),
        )
        if request.plan:
            plan = request.plan
            logger.info(
                "[DRY_RUN] range [%d, %d], swap %s %.2f%% (skipped=%s, reason=%s)",
                plan.new_tick_lower,
                plan.new_tick_upper,
                plan.swap_direction.value,
                plan.swap_percent * 100,
                plan.skipped,
                plan.skip_reason.value if plan.skip_reason else None,
            )
        result = self._base_result(request, started)
        result.finished_at_ms = self.clock()
        result.details = {"dry_run": True, "steps": [step.value for step in request.steps]}
        return result

    def _build_transaction(self, request: ActionRequest) -> str:
        payload: Dict[str, Any] = {"sender": self.signer.address, **request.to_payload()}
        try:
            response = requests.request(
                "POST",
                self.tx_builder_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.tx_builder_timeout,
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            raise TransientChainError("transaction builder unreachable", exc) from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientChainError(f"transaction builder returned HTTP {status}")
        try:
            body = response.json()
        except ValueError:
            body = {}
        if status == 409:
            raise PreconditionError(request.entity_id, body.get("error") or "builder reports entity not actionable")
        if status >= 400:
            raise ActionFailure(request.entity_id, f"builder rejected request: {body.get('error') or status}")

        tx_bytes = body.get("txBytes")
        if not tx_bytes:
            raise ActionFailure(request.entity_id, "builder response has no txBytes")
        return tx_bytes

    def _submit_live(self, request: ActionRequest) -> ActionResult:
        started = self.clock()
        tx_bytes = self._build_transaction(request)
        signature = self.signer.sign_transaction(tx_bytes)

        try:
            response = self.rpc.execute_transaction_block(tx_bytes, signature) or {}
        except RpcResponseError as exc:
            raise ActionFailure(request.entity_id, f"transaction rejected: {exc.message}") from exc

        digest = response.get("digest")
        status = ((response.get("effects") or {}).get("status")) or {}
        if status.get("status") != "success":
            raise ActionFailure(
                request.entity_id,
                f"transaction failed: {status.get('error') or 'unknown error'}",
                transaction_id=digest,
            )

        result = self._base_result(request, started)
        result.transaction_id = digest
        result.finished_at_ms = self.clock()
        return result
