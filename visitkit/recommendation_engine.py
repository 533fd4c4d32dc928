"""Lab-kit recommendation recompute engine."""

import logging
import math
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd

from visitkit.dates import add_days, today_utc
from visitkit.forecast import forecast_kit_demand, normalize_kit_type
from visitkit.schemas import (
    BatchRecomputeResult,
    EngineSettings,
    InventoryForecast,
    KitDemand,
    RecomputeResult,
    RecomputeTotals,
    StudyRecomputeOutcome,
)
from visitkit.store import TrialStore

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {"critical": 0, "warning": 1, "ok": 2}


def _kits(count: int) -> str:
    return f"{count} kit{'' if count == 1 else 's'}"


def recommendation_reason(demand: KitDemand, days_ahead: int) -> str:
    """Human-readable justification for a recommended quantity."""
    if demand.reason_type == "deficit":
        reason = f"Forecast deficit of {_kits(demand.deficit)} within {days_ahead} days."
    else:
        reason = f"Maintain buffer of {_kits(demand.buffer_kits)} within {days_ahead} days."
    if demand.kits_expiring_soon:
        reason += f" {_kits(demand.kits_expiring_soon)} expiring soon."
    if demand.pending_order_quantity:
        reason += f" Pending orders cover {demand.pending_order_quantity}."
    reason += f" Order {_kits(demand.quantity_needed)}."
    return reason


def _latest_first(rows: pd.DataFrame) -> pd.DataFrame:
    order = rows["updated_at"].fillna(rows["created_at"]).fillna("").astype(str)
    return rows.assign(_order=order).sort_values("_order", ascending=False).drop(columns="_order")


class RecommendationEngine:
    """
    Keeps each study's active lab-kit recommendations in line with forecast demand.

    A recompute sweeps expired kits, forecasts per-kit-type demand over the
    horizon and reconciles active recommendations: create where there is a new
    shortfall, update where the quantity changed, expire where the shortfall is
    gone. Every write for one study happens in a single store transaction.
    """

    def __init__(self, store: TrialStore, settings: Optional[EngineSettings] = None):
        self.store = store
        self.settings = settings or EngineSettings()

    def resolve_days_ahead(self, days_ahead: Any = None) -> int:
        """Horizon in days: default when absent or non-numeric, clamped to [1, max]."""
        if days_ahead is None or isinstance(days_ahead, bool):
            return self.settings.default_days_ahead
        try:
            value = float(days_ahead)
        except (TypeError, ValueError):
            return self.settings.default_days_ahead
        if not math.isfinite(value):
            return self.settings.default_days_ahead
        return int(min(max(value, 1), self.settings.max_days_ahead))

    def recompute(
        self,
        study_id: str,
        days_ahead: Any = None,
        today: Optional[date] = None,
    ) -> RecomputeResult:
        """
        Recompute recommendations for one study.

        Raises:
            StudyNotFoundError: If the study doesn't exist
            MalformedRowError: If a template or study row can't be projected;
                               nothing is written in that case
        """
        horizon_days = self.resolve_days_ahead(days_ahead)
        today = today or today_utc()
        horizon_end = add_days(today, horizon_days)
        study = self.store.get_study(study_id)

        with self.store.transaction(f"study {study_id}"):
            kits_expired = self.store.expire_lab_kits(study_id, today)
            demands = forecast_kit_demand(self.store, study, today, horizon_days)
            result = self._reconcile(study_id, demands, horizon_days, horizon_end)

        logger.info(
            f"Recomputed study {study_id} ({horizon_days} days): created={result.created} "
            f"updated={result.updated} expired={result.expired} superseded={result.superseded} "
            f"kits_expired={kits_expired}"
        )
        return result

    def forecast(
        self,
        study_id: str,
        days_ahead: Any = None,
        today: Optional[date] = None,
    ) -> InventoryForecast:
        """
        Kit demand and stock status per kit type, most severe first.

        Runs the expiration sweep first so expired kits never count as supply.
        """
        horizon_days = self.resolve_days_ahead(days_ahead)
        today = today or today_utc()
        study = self.store.get_study(study_id)

        with self.store.transaction(f"forecast {study_id}"):
            self.store.expire_lab_kits(study_id, today)
        demands = forecast_kit_demand(self.store, study, today, horizon_days)
        demands.sort(key=lambda d: (SEVERITY_ORDER[d.status], -d.deficit, -d.visits_scheduled))

        return InventoryForecast(
            study_id=study_id,
            days_ahead=horizon_days,
            items=demands,
            total_visits_scheduled=sum(d.visits_scheduled for d in demands),
            critical_issues=sum(1 for d in demands if d.status == "critical"),
            warnings=sum(1 for d in demands if d.status == "warning"),
        )

    def _reconcile(
        self,
        study_id: str,
        demands: List[KitDemand],
        horizon_days: int,
        horizon_end: date,
    ) -> RecomputeResult:
        result = RecomputeResult(study_id=study_id)

        existing: Dict[str, Dict[str, Any]] = {}
        duplicates: List[str] = []
        active = self.store.recommendations(study_id, ["active"])
        if not active.empty:
            active = _latest_first(active)
            for row in active.astype(object).where(active.notna(), None).to_dict(orient="records"):
                key = normalize_kit_type(row.get("kit_type"))
                if key is None or key in existing:
                    duplicates.append(row["id"])
                else:
                    existing[key] = row
        result.superseded = self.store.set_recommendation_status(duplicates, "superseded")

        to_expire: List[str] = []
        for demand in demands:
            key = normalize_kit_type(demand.kit_type)
            current = existing.pop(key, None)
            values = {
                "quantity_needed": demand.quantity_needed,
                "horizon_end_date": horizon_end,
                "reason": recommendation_reason(demand, horizon_days),
                "reason_type": demand.reason_type,
                "confidence": demand.confidence,
                "window_start": demand.window_start,
                "window_end": demand.window_end,
                "latest_order_date": demand.latest_order_date,
            }
            if current is None:
                if demand.quantity_needed > 0:
                    self.store.insert_recommendation(
                        {**values, "study_id": study_id, "kit_type": demand.kit_type, "status": "active"}
                    )
                    result.created += 1
            elif demand.quantity_needed <= 0:
                to_expire.append(current["id"])
            elif _quantity(current.get("quantity_needed")) != demand.quantity_needed:
                self.store.update_recommendation(current["id"], values)
                result.updated += 1

        # Kit types with no remaining demand in the horizon
        to_expire.extend(row["id"] for row in existing.values())
        result.expired = self.store.set_recommendation_status(to_expire, "expired")

        active_after = self.store.recommendations(study_id, ["active"])
        result.recommendations = active_after.astype(object).where(active_after.notna(), None).to_dict(orient="records")
        return result

    def recompute_all(
        self,
        days_ahead: Any = None,
        study_statuses: Optional[List[str]] = None,
        today: Optional[date] = None,
    ) -> BatchRecomputeResult:
        """
        Recompute every study in the given statuses, one at a time.

        A failing study is rolled back and reported; it doesn't stop the
        batch. Totals only count studies that succeeded.
        """
        statuses = study_statuses or self.settings.default_study_statuses
        horizon_days = self.resolve_days_ahead(days_ahead)
        today = today or today_utc()

        study_ids = [
            str(study_id) for study_id in self.store.list_studies(statuses)["id"].tolist()
        ]
        logger.info(
            f"Recomputing {len(study_ids)} studies with status in {', '.join(statuses)} "
            f"({horizon_days} days ahead)"
        )

        batch = BatchRecomputeResult(totals=RecomputeTotals())
        for study_id in study_ids:
            batch.processed += 1
            try:
                result = self.recompute(study_id, horizon_days, today)
            except Exception as e:
                batch.failures += 1
                logger.error(f"Recompute failed for study {study_id}: {e}", exc_info=True)
                batch.results.append(StudyRecomputeOutcome(study_id=study_id, status="error", error=str(e)))
                continue

            batch.totals.created += result.created
            batch.totals.updated += result.updated
            batch.totals.expired += result.expired
            batch.results.append(StudyRecomputeOutcome(
                study_id=study_id,
                status="ok",
                created=result.created,
                updated=result.updated,
                expired=result.expired,
            ))

        logger.info(
            f"Batch recompute finished: processed={batch.processed} failures={batch.failures} "
            f"created={batch.totals.created} updated={batch.totals.updated} expired={batch.totals.expired}"
        )
        return batch


def _quantity(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None
