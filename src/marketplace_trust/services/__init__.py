"""Application services — use case orchestration."""

from marketplace_trust.services.dashboard_service import DashboardAggregator
from marketplace_trust.services.dispute_case_store import DisputeCaseStore
from marketplace_trust.services.dispute_service import DisputeService
from marketplace_trust.services.escrow_ledger import EscrowLedger

__all__ = ["DashboardAggregator", "DisputeCaseStore", "DisputeService", "EscrowLedger"]
