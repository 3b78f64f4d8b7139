import hashlib
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from contractnest_edge.core.artifacts import ArtifactStore, LocalArtifactStore
from contractnest_edge.domain.schemas import Contract, CreateContractRequest, EdgeContext

# Where contract records are stored: <repo_root>/data/contracts/<tenant>/<contract_id>.json
# (override the base directory with CONTRACTS_DIR)
CONTRACTS_DIR = Path(os.getenv("CONTRACTS_DIR") or Path(__file__).resolve().parents[2] / "data" / "contracts")

artifact_store: ArtifactStore = LocalArtifactStore(CONTRACTS_DIR)


def _tenant_dir(tenant_id: str) -> str:
    name = re.sub(r"[^A-Za-z0-9_.-]", "_", tenant_id)
    if not name.strip("."):
        # "", "." and ".." are not usable as a directory of their own
        name = "tenant-" + hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()[:16]
    return name


def create_contract(ctx: EdgeContext, request: CreateContractRequest) -> Contract:
    """
    Create a draft contract for the calling tenant.

    Side effecting and NOT idempotent on its own: every call writes a new
    record. Callers route it through the idempotency runner.
    """
    contract = Contract(
        contract_id=str(uuid.uuid4()),
        tenant_id=ctx.tenant_id,
        product_code=ctx.product_code,
        title=request.title,
        counterparty=request.counterparty,
        contract_type=request.contract_type,
        value=request.value,
        currency=request.currency,
        start_date=request.start_date,
        end_date=request.end_date,
        status="draft",
        created_by=ctx.user_id,
        created_at=datetime.now(timezone.utc),
        metadata=request.metadata,
    )

    artifact_store.write_json(
        f"{_tenant_dir(ctx.tenant_id)}/{contract.contract_id}.json",
        contract.model_dump(mode="json"),
    )
    return contract


def list_contracts(tenant_id: str, product_code: Optional[str] = None) -> List[Contract]:
    """Tenant's contracts, newest first."""
    contracts = [Contract.model_validate(raw) for raw in artifact_store.list_json(_tenant_dir(tenant_id))]
    # Directory names are sanitized, so two tenants can share one
    contracts = [c for c in contracts if c.tenant_id == tenant_id]
    if product_code:
        contracts = [c for c in contracts if c.product_code == product_code]
    contracts.sort(key=lambda c: c.created_at, reverse=True)
    return contracts
