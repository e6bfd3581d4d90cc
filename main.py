import logging
import math
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Path, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from auth import read_token, token_from_header
from config import get_settings
from database import SessionLocal, init_db
from errors import ErrorKind, LedgerError
from models import CategoryType, User
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    CategoryOut,
    CostCenterIn,
    CostCenterOut,
    EntryIn,
    EntryOut,
    ListParams,
    LoginIn,
    MaterializationOut,
    Page,
    PaymentTypeIn,
    PaymentTypeOut,
    RecurringEntryIn,
    RecurringEntryOut,
    TokenOut,
    UserIn,
    UserOut,
)
from services import (
    CategoryService,
    CostCenterService,
    DashboardService,
    EntryService,
    PaymentTypeService,
    RecurringEntryService,
    UserService,
    process_recurring_entries,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Ledger")

STATUS_BY_KIND = {
    ErrorKind.duplicate: 409,
    ErrorKind.missing_dependency: 400,
    ErrorKind.referential_integrity: 409,
    ErrorKind.not_found: 404,
    ErrorKind.unauthorized: 401,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, LedgerError):
        return HTTPException(status_code=STATUS_BY_KIND[exc.kind], detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def current_user_id(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> int:
    try:
        user_id = read_token(token_from_header(authorization))
    except LedgerError as exc:
        raise http_error(exc) from exc
    if db.get(User, user_id) is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user_id


def list_params(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    items_per_page: int = Query(10, ge=1, le=100),
    sort_by: list[str] = Query(default=[]),
    sort_order: list[Literal["asc", "desc"]] = Query(default=[]),
) -> ListParams:
    return ListParams(
        search=search,
        page=page,
        items_per_page=items_per_page,
        sort_by=sort_by,
        sort_order=sort_order,
    )


def _page(schema, items: list, total: int, params: ListParams) -> dict:
    return {
        "items": [schema.model_validate(item) for item in items],
        "total": total,
        "page": params.page,
        "items_per_page": params.items_per_page,
    }


def _finite(value: float) -> Optional[float]:
    # JSON has no Infinity; clients read null as "unbounded".
    return value if math.isfinite(value) else None


# Users


@app.post("/users", response_model=UserOut)
def register_user(data: UserIn, db: Session = Depends(get_db)):
    try:
        return UserService(db).register(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/login", response_model=TokenOut)
def login(data: LoginIn, db: Session = Depends(get_db)):
    try:
        user, token = UserService(db).authenticate(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"token": token, "user": user}


# Cost centers


@app.get("/cost_centers", response_model=Page[CostCenterOut])
def list_cost_centers(
    params: ListParams = Depends(list_params),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        items, total = CostCenterService(db, user_id).list(params)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _page(CostCenterOut, items, total, params)


@app.post("/cost_centers", response_model=CostCenterOut)
def create_cost_center(
    data: CostCenterIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CostCenterService(db, user_id).create(data)


@app.get("/cost_centers/{cost_center_id}", response_model=CostCenterOut)
def get_cost_center(
    cost_center_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return CostCenterService(db, user_id).get(cost_center_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/cost_centers/{cost_center_id}", response_model=CostCenterOut)
def update_cost_center(
    cost_center_id: int,
    data: CostCenterIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return CostCenterService(db, user_id).update(cost_center_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/cost_centers/{cost_center_id}", status_code=204)
def delete_cost_center(
    cost_center_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        CostCenterService(db, user_id).delete(cost_center_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# Categories


@app.get("/categories", response_model=Page[CategoryOut])
def list_categories(
    type: Optional[CategoryType] = None,
    cost_center_id: Optional[int] = None,
    params: ListParams = Depends(list_params),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        items, total = CategoryService(db, user_id).list(
            params, type=type, cost_center_id=cost_center_id
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return _page(CategoryOut, items, total, params)


@app.post("/categories", response_model=CategoryOut)
def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user_id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user_id).get(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user_id).update(category_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user_id).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# Payment types


@app.get("/payment_types", response_model=list[PaymentTypeOut])
def list_payment_types(
    search: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return PaymentTypeService(db, user_id).list_all(search)


@app.post("/payment_types", response_model=PaymentTypeOut)
def create_payment_type(
    data: PaymentTypeIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return PaymentTypeService(db, user_id).create(data)


@app.get("/payment_types/{payment_type_id}", response_model=PaymentTypeOut)
def get_payment_type(
    payment_type_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return PaymentTypeService(db, user_id).get(payment_type_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/payment_types/{payment_type_id}", response_model=PaymentTypeOut)
def update_payment_type(
    payment_type_id: int,
    data: PaymentTypeIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return PaymentTypeService(db, user_id).update(payment_type_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/payment_types/{payment_type_id}", status_code=204)
def delete_payment_type(
    payment_type_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        PaymentTypeService(db, user_id).delete(payment_type_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# Entries


@app.get("/entries", response_model=Page[EntryOut])
def list_entries(
    period: Optional[str] = None,
    params: ListParams = Depends(list_params),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        items, total = EntryService(db, user_id).list(params, period=period)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _page(EntryOut, items, total, params)


@app.post("/entries", response_model=EntryOut)
def create_entry(
    data: EntryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return EntryService(db, user_id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/entries/{entry_id}", response_model=EntryOut)
def get_entry(
    entry_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return EntryService(db, user_id).get(entry_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/entries/{entry_id}", response_model=EntryOut)
def update_entry(
    entry_id: int,
    data: EntryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return EntryService(db, user_id).update(entry_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/entries/{entry_id}", status_code=204)
def delete_entry(
    entry_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        EntryService(db, user_id).delete(entry_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# Recurring entries


@app.get("/recurring_entries", response_model=Page[RecurringEntryOut])
def list_recurring_entries(
    params: ListParams = Depends(list_params),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        items, total = RecurringEntryService(db, user_id).list(params)
    except ValueError as exc:
        raise http_error(exc) from exc
    return _page(RecurringEntryOut, items, total, params)


@app.get(
    "/recurring_entries/upcoming/{year}/{month}",
    response_model=list[RecurringEntryOut],
)
def upcoming_recurring_entries(
    year: int = Path(..., ge=1, le=9999),
    month: int = Path(..., ge=1, le=12),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return RecurringEntryService(db, user_id).upcoming(year, month)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/recurring_entries", response_model=RecurringEntryOut)
def create_recurring_entry(
    data: RecurringEntryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return RecurringEntryService(db, user_id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/recurring_entries/{recurring_entry_id}", response_model=RecurringEntryOut)
def get_recurring_entry(
    recurring_entry_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return RecurringEntryService(db, user_id).get(recurring_entry_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/recurring_entries/{recurring_entry_id}", response_model=RecurringEntryOut)
def update_recurring_entry(
    recurring_entry_id: int,
    data: RecurringEntryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return RecurringEntryService(db, user_id).update(recurring_entry_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/recurring_entries/{recurring_entry_id}", status_code=204)
def delete_recurring_entry(
    recurring_entry_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        RecurringEntryService(db, user_id).delete(recurring_entry_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# Jobs


@app.post("/jobs/process_recurring_entries", response_model=MaterializationOut)
def run_recurring_entries(
    _user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    result = process_recurring_entries(db)
    logger.info(f"manual_recurring_run: posted={result.posted}")
    return result


# Dashboard


@app.get("/dashboard/month/current")
def current_month_balance(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    today = local_today()
    return DashboardService(db, user_id).monthly_balance(today.year, today.month)


@app.get("/dashboard/month/current/ratio")
def current_month_ratio(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    today = local_today()
    ratio = DashboardService(db, user_id).income_expense_ratio(today.year, today.month)
    return {"ratio": _finite(ratio)}


@app.get("/dashboard/category/comparison")
def category_comparison(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    today = local_today()
    return DashboardService(db, user_id).category_comparison(today.year, today.month)


@app.get("/dashboard/balance/survival")
def survival_time(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    months = DashboardService(db, user_id).survival_time(local_today())
    return {"survival_time": _finite(months)}


@app.get("/dashboard/balance/total")
def total_balance(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return {"total_balance": DashboardService(db, user_id).total_balance()}


@app.get("/dashboard/{year}")
def yearly_balance(
    year: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return DashboardService(db, user_id).yearly_balance(year)


@app.get("/dashboard/{year}/{month}/totals")
def category_totals(
    year: int,
    month: int = Path(..., ge=1, le=12),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    totals = DashboardService(db, user_id).category_totals(year, month)
    return {"year": year, "month": month, "totals": totals}


@app.get("/dashboard/{year}/{month}/payment_types")
def payment_type_totals(
    year: int,
    month: int = Path(..., ge=1, le=12),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    totals = DashboardService(db, user_id).payment_type_totals(year, month)
    return [
        {"payment_type_name": name, "total": total} for name, total in totals.items()
    ]


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
