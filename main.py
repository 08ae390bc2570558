import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import SessionLocal, init_db
from identity import (
    AccountExists,
    AccountService,
    IdentityProvider,
    InvalidCredentials,
    build_identity_provider,
)
from insights import (
    CategoryAmbiguous,
    InsightAdapter,
    InsufficientData,
    MalformedResponse,
    NoSuggestion,
    StaleResponse,
    UpstreamUnavailable,
    build_text_generator,
)
from periods import PaydayConfigError, resolve_period
from schemas import (
    AnnualBudget,
    CategoryIn,
    CategoryOrder,
    CategoryRename,
    InsightsIn,
    PaydaySettings,
    RecurringPaymentIn,
    SettingsPatch,
    SignInIn,
    SignUpIn,
    SuggestCategoryIn,
    TransactionIn,
    TransactionPatch,
)
from services import (
    AnnualBudgetService,
    DashboardService,
    NotFound,
    RecurringPaymentService,
    SettingsService,
    SetupIncomplete,
    TransactionService,
    local_today,
)
from store import ChangeFeed, DocumentStore


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


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

app = FastAPI(title="Kakeibo", version=APP_VERSION)
app.state.feed = ChangeFeed()
app.state.identity = build_identity_provider()
app.state.insights = InsightAdapter(build_text_generator())


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_store(request: Request, db: Session = Depends(get_db)) -> DocumentStore:
    return DocumentStore(db, request.app.state.feed)


def get_identity(request: Request) -> IdentityProvider:
    return request.app.state.identity


def get_accounts(store: DocumentStore = Depends(get_store)) -> AccountService:
    return AccountService(store)


def get_insight_adapter(request: Request) -> InsightAdapter:
    return request.app.state.insights


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def current_user_id(
    request: Request, identity: IdentityProvider = Depends(get_identity)
) -> str:
    user_id = identity.current_user(bearer_token(request))
    if user_id is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return user_id


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info(f"startup: version={APP_VERSION}")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": errors})


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, InvalidCredentials):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, AccountExists):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (SetupIncomplete, PaydayConfigError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StaleResponse):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (UpstreamUnavailable, MalformedResponse)):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def date_param(request: Request, name: str) -> Optional[date]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date: {name}") from exc


def int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid number: {name}") from exc


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/auth/sign-up", status_code=201)
def sign_up(
    data: SignUpIn,
    identity: IdentityProvider = Depends(get_identity),
    accounts: AccountService = Depends(get_accounts),
):
    try:
        token = identity.sign_up(accounts, data.user_id, data.password)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"token": token, "user_id": data.user_id.strip()}


@app.post("/auth/sign-in")
def sign_in(
    data: SignInIn,
    identity: IdentityProvider = Depends(get_identity),
    accounts: AccountService = Depends(get_accounts),
):
    try:
        token = identity.sign_in(accounts, data.user_id, data.password)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"token": token, "user_id": data.user_id.strip()}


@app.post("/auth/sign-out", status_code=204)
def sign_out(request: Request, identity: IdentityProvider = Depends(get_identity)):
    token = bearer_token(request)
    if token:
        identity.sign_out(token)
    return Response(status_code=204)


@app.get("/auth/me")
def me(user_id: str = Depends(current_user_id)):
    return {"user_id": user_id}


@app.get("/settings")
def get_user_settings(
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        settings = SettingsService(store, user_id).load()
    except ValueError as exc:
        raise http_error(exc) from exc
    return settings.model_dump(mode="json")


@app.patch("/settings")
def patch_user_settings(
    data: SettingsPatch,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        settings = SettingsService(store, user_id).update(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return settings.model_dump(mode="json")


@app.put("/settings/payday")
def put_payday(
    data: PaydaySettings,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        settings = SettingsService(store, user_id).set_payday(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return settings.payday_settings.model_dump(mode="json")


@app.get("/setup-status")
def setup_status(
    request: Request,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    year = int_param(request, "year", local_today().year)
    try:
        return SettingsService(store, user_id).setup_status(year)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/categories")
def list_categories(
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        registry = SettingsService(store, user_id).registry()
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "income": [c.model_dump(mode="json") for c in registry.income()],
        "expense": [c.model_dump(mode="json") for c in registry.expense()],
    }


@app.post("/categories", status_code=201)
def create_category(
    data: CategoryIn,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        category = SettingsService(store, user_id).add_category(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category.model_dump(mode="json")


@app.post("/categories/reorder")
def reorder_categories(
    data: CategoryOrder,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        ordered = SettingsService(store, user_id).reorder_categories(data.kind, data.ids)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [c.model_dump(mode="json") for c in ordered]


@app.patch("/categories/{category_id}")
def rename_category(
    category_id: str,
    data: CategoryRename,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        category = SettingsService(store, user_id).rename_category(
            category_id, data.name
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return category.model_dump(mode="json")


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: str,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        SettingsService(store, user_id).remove_category(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/budgets/{year}")
def get_budget(
    year: int,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    budget = AnnualBudgetService(store, user_id).get(year)
    if budget is None:
        return {"year": year, "setup_required": True}
    return {
        "year": year,
        "setup_required": False,
        "budget": budget.model_dump(mode="json"),
    }


@app.get("/budgets/{year}/draft")
def get_budget_draft(
    year: int,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        budget = AnnualBudgetService(store, user_id).draft(year)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget.model_dump(mode="json")


@app.put("/budgets/{year}")
def put_budget(
    year: int,
    data: AnnualBudget,
    request: Request,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    service = AnnualBudgetService(store, user_id)
    if request.query_params.get("copy_normal_to_bonus") in ("1", "true"):
        data = service.copy_normal_to_bonus(data)
    try:
        budget = service.save(year, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget.model_dump(mode="json")


@app.get("/recurring")
def list_recurring(
    request: Request,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    from_date = date_param(request, "from") or local_today()
    return RecurringPaymentService(store, user_id).upcoming(from_date)


@app.put("/recurring")
def put_recurring(
    data: list[RecurringPaymentIn],
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        payments = RecurringPaymentService(store, user_id).replace_user_payments(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [p.model_dump(mode="json") for p in payments]


@app.get("/transactions")
def list_transactions(
    request: Request,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    order = request.query_params.get("order", "desc")
    try:
        payday = SettingsService(store, user_id).payday_settings()
        period = resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
            payday_settings=payday,
            today=local_today(),
        )
        items = TransactionService(store, user_id).query(period.start, period.end, order)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
        "items": [t.model_dump(mode="json") for t in items],
    }


@app.post("/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        txn = TransactionService(store, user_id).add(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return txn.model_dump(mode="json")


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        txn = TransactionService(store, user_id).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return txn.model_dump(mode="json")


@app.patch("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    data: TransactionPatch,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        txn = TransactionService(store, user_id).update(transaction_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return txn.model_dump(mode="json")


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: str,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        TransactionService(store, user_id).remove(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/cycles/{year}")
def api_cycles(
    year: int,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return DashboardService(store, user_id).cycles(year)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/cycle")
def api_cycle(
    request: Request,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return DashboardService(store, user_id).cycle(date_param(request, "date"))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/dashboard")
def api_dashboard(
    request: Request,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return DashboardService(store, user_id).dashboard(date_param(request, "date"))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/monthly")
def api_monthly(
    request: Request,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    today = local_today()
    year = int_param(request, "year", today.year)
    month = int_param(request, "month", today.month)
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
    try:
        return DashboardService(store, user_id).monthly(year, month)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/calendar")
def api_calendar(
    request: Request,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return DashboardService(store, user_id).calendar(date_param(request, "date"))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/annual/{year}")
def api_annual(
    year: int,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return DashboardService(store, user_id).annual(year)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/suggest-category")
async def api_suggest_category(
    data: SuggestCategoryIn,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
    adapter: InsightAdapter = Depends(get_insight_adapter),
):
    try:
        categories = SettingsService(store, user_id).registry().expense()
        category_id = await adapter.suggest_category(
            data.description, categories, channel=f"suggest:{user_id}"
        )
    except (NoSuggestion, CategoryAmbiguous, MalformedResponse) as exc:
        return {"category_id": None, "message": str(exc)}
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"category_id": category_id, "message": None}


@app.post("/api/insights")
async def api_insights(
    data: InsightsIn,
    store: DocumentStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
    adapter: InsightAdapter = Depends(get_insight_adapter),
):
    if data.start > data.end:
        raise HTTPException(status_code=400, detail="Start date must be before end date")
    try:
        txns, budget_total, registry = DashboardService(store, user_id).insight_inputs(
            data.start, data.end, data.budget
        )
        insights = await adapter.summarize(
            txns, budget_total, registry, channel=f"insights:{user_id}"
        )
    except InsufficientData as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
    return insights.model_dump(by_alias=True)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
