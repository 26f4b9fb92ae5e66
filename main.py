import logging
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import (
    InvalidInput,
    NotFound,
    PersistenceFailure,
    ReconciliationInProgress,
    UpstreamUnavailable,
)
from provider import PlaidRecurringClient, RecurringStreamProvider
from scheduler import SchedulerManager
from schemas import (
    HighestSubscriptionOut,
    LinkConnectionIn,
    RawStream,
    ReconcileOut,
    StatsOut,
    SubscriptionOut,
)
from services import (
    ConnectionService,
    ReconciliationService,
    StatsService,
    SubscriptionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Subscription Tracker")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_provider() -> RecurringStreamProvider:
    return PlaidRecurringClient()


def current_owner_id(x_owner_id: Optional[str] = Header(default=None)) -> str:
    # Set by the identity provider in front of this service.
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="Missing owner identity")
    return owner_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidInput):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ReconciliationInProgress):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, UpstreamUnavailable):
        return HTTPException(status_code=502, detail=str(exc))
    logger.error(f"request_failed: error={exc.__class__.__name__} detail={exc}")
    return HTTPException(status_code=503, detail=str(exc))


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/subscriptions/detect", response_model=ReconcileOut)
def detect_subscriptions(
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
    provider: RecurringStreamProvider = Depends(get_provider),
):
    try:
        result = ReconciliationService(db, owner_id).detect(provider)
    except (
        UpstreamUnavailable,
        PersistenceFailure,
        ReconciliationInProgress,
    ) as exc:
        raise _http_error(exc) from exc
    return ReconcileOut(detected=result.detected)


@app.post("/api/subscriptions/reconcile", response_model=ReconcileOut)
def reconcile_subscriptions(
    streams: list[RawStream],
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
):
    try:
        result = ReconciliationService(db, owner_id).reconcile(streams)
    except ReconciliationInProgress as exc:
        raise _http_error(exc) from exc
    return ReconcileOut(detected=result.detected)


@app.get("/api/subscriptions", response_model=list[SubscriptionOut])
def list_subscriptions(
    request: Request,
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
):
    filters = {
        "status": request.query_params.get("status"),
        "sort_by": request.query_params.get("sortBy"),
        "sort_order": request.query_params.get("sortOrder"),
    }
    try:
        items = SubscriptionService(db, owner_id).list(filters)
    except (InvalidInput, PersistenceFailure) as exc:
        raise _http_error(exc) from exc
    return [SubscriptionOut.model_validate(sub) for sub in items]


@app.get("/api/subscriptions/stats", response_model=StatsOut)
def subscription_stats(
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
):
    try:
        report = StatsService(db, owner_id).compute()
    except PersistenceFailure as exc:
        raise _http_error(exc) from exc
    highest = report.highest_subscription
    return StatsOut(
        total_monthly_cost=report.total_monthly_cost,
        yearly_total=report.yearly_total,
        active_count=report.active_count,
        total_count=report.total_count,
        highest_subscription=(
            HighestSubscriptionOut(name=highest.name, amount=highest.amount)
            if highest
            else None
        ),
        by_category=report.by_category,
        by_cycle=report.by_cycle,
    )


@app.put("/api/subscriptions/{subscription_id}", response_model=SubscriptionOut)
def update_subscription(
    subscription_id: int,
    payload: dict = Body(...),
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
):
    try:
        sub = SubscriptionService(db, owner_id).update(subscription_id, payload)
    except (NotFound, InvalidInput, PersistenceFailure) as exc:
        raise _http_error(exc) from exc
    return SubscriptionOut.model_validate(sub)


@app.delete("/api/subscriptions/{subscription_id}")
def delete_subscription(
    subscription_id: int,
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
):
    try:
        return SubscriptionService(db, owner_id).delete(subscription_id)
    except (NotFound, PersistenceFailure) as exc:
        raise _http_error(exc) from exc


@app.post("/api/connection")
def link_connection(
    data: LinkConnectionIn,
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
):
    try:
        connection = ConnectionService(db, owner_id).link(data)
    except PersistenceFailure as exc:
        raise _http_error(exc) from exc
    return {
        "success": True,
        "item_id": connection.item_id,
        "institution": connection.institution,
    }


@app.delete("/api/connection")
def disconnect_connection(
    owner_id: str = Depends(current_owner_id),
    db: Session = Depends(get_db),
    provider: RecurringStreamProvider = Depends(get_provider),
):
    try:
        return ConnectionService(db, owner_id).disconnect(provider)
    except (NotFound, PersistenceFailure) as exc:
        raise _http_error(exc) from exc
