import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import (
    SESSION_COOKIE,
    AuthService,
    CurrentUser,
    clear_session_cookie,
    set_session_cookie,
    unsign_session_id,
)
from config import get_settings
from database import Base, SessionLocal, engine
from errors import AuthenticationError, DomainError, StoreError
from middleware import RouteProtectionMiddleware
from models import CategoryType
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetProgressOut,
    BudgetUpdateIn,
    CategoryIn,
    CategoryOut,
    DashboardOut,
    ExpenseIn,
    ExpenseOut,
    GoalIn,
    GoalOut,
    IncomeIn,
    IncomeOut,
    LoginIn,
    PaymentMethodIn,
    PaymentMethodOut,
    RegisterIn,
    SuccessOut,
    UserOut,
)
from services import (
    BudgetService,
    CategoryService,
    DashboardService,
    ExpenseService,
    GoalService,
    IncomeService,
    PaymentMethodService,
    RecordFilters,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")
app.add_middleware(RouteProtectionMiddleware)


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


def current_user(request: Request, db: Session = Depends(get_db)) -> CurrentUser:
    session_id = unsign_session_id(request.cookies.get(SESSION_COOKIE))
    user = AuthService(db).resolve_user(session_id)
    if not user:
        raise AuthenticationError("Unauthorized")
    return user


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    if settings.create_schema:
        Base.metadata.create_all(engine)
    if settings.scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


for _error_class in DomainError:
    app.add_exception_handler(_error_class, _domain_error_handler)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return JSONResponse(status_code=400, content={"error": "; ".join(messages)})


@app.exception_handler(SQLAlchemyError)
@app.exception_handler(StoreError)
def store_error_handler(request: Request, exc: Exception):
    logger.error(
        f"store_error: method={request.method} path={request.url.path}",
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# Auth


@app.post("/api/auth/register", status_code=201, response_model=UserOut)
def register(data: RegisterIn, response: Response, db: Session = Depends(get_db)):
    service = AuthService(db)
    user = service.register(data)
    set_session_cookie(response, service.create_session(user.id))
    return user


@app.post("/api/auth/login", response_model=UserOut)
def login(data: LoginIn, response: Response, db: Session = Depends(get_db)):
    service = AuthService(db)
    user = service.authenticate(data)
    set_session_cookie(response, service.create_session(user.id))
    return user


@app.get("/api/auth/me", response_model=UserOut)
def me(user: CurrentUser = Depends(current_user)):
    return user


@app.post("/api/auth/logout", response_model=SuccessOut)
def logout(request: Request, response: Response, db: Session = Depends(get_db)):
    session_id = unsign_session_id(request.cookies.get(SESSION_COOKIE))
    AuthService(db).delete_session(session_id)
    clear_session_cookie(response)
    return SuccessOut()


# Categories


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    type: CategoryType = Query(CategoryType.expense),
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user.id).list_all(type)


@app.post("/api/categories", status_code=201, response_model=CategoryOut)
def create_category(
    data: CategoryIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user.id).create(data)


@app.get("/api/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user.id).get(category_id)


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    data: CategoryIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user.id).update(category_id, data)


@app.delete("/api/categories/{category_id}", response_model=SuccessOut)
def delete_category(
    category_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    CategoryService(db, user.id).delete(category_id)
    return SuccessOut()


# Payment methods


@app.get("/api/payment-methods", response_model=list[PaymentMethodOut])
def list_payment_methods(
    user: CurrentUser = Depends(current_user), db: Session = Depends(get_db)
):
    return PaymentMethodService(db, user.id).list_all()


@app.post("/api/payment-methods", status_code=201, response_model=PaymentMethodOut)
def create_payment_method(
    data: PaymentMethodIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return PaymentMethodService(db, user.id).create(data)


@app.get("/api/payment-methods/{payment_method_id}", response_model=PaymentMethodOut)
def get_payment_method(
    payment_method_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return PaymentMethodService(db, user.id).get(payment_method_id)


@app.put("/api/payment-methods/{payment_method_id}", response_model=PaymentMethodOut)
def update_payment_method(
    payment_method_id: int,
    data: PaymentMethodIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return PaymentMethodService(db, user.id).update(payment_method_id, data)


@app.delete("/api/payment-methods/{payment_method_id}", response_model=SuccessOut)
def delete_payment_method(
    payment_method_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    PaymentMethodService(db, user.id).delete(payment_method_id)
    return SuccessOut()


# Expenses


@app.get("/api/expenses", response_model=list[ExpenseOut])
def list_expenses(
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    payment_method_id: Optional[int] = Query(None, alias="paymentMethodId"),
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = RecordFilters(
        from_date=from_date,
        to_date=to_date,
        category_id=category_id,
        payment_method_id=payment_method_id,
    )
    return ExpenseService(db, user.id).list(filters)


@app.post("/api/expenses", status_code=201, response_model=ExpenseOut)
def create_expense(
    data: ExpenseIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ExpenseService(db, user.id).create(data)


@app.get("/api/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(
    expense_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ExpenseService(db, user.id).get(expense_id)


@app.put("/api/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int,
    data: ExpenseIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return ExpenseService(db, user.id).update(expense_id, data)


@app.delete("/api/expenses/{expense_id}", response_model=SuccessOut)
def delete_expense(
    expense_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    ExpenseService(db, user.id).delete(expense_id)
    return SuccessOut()


# Income


@app.get("/api/income", response_model=list[IncomeOut])
def list_income(
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = RecordFilters(from_date=from_date, to_date=to_date, category_id=category_id)
    return IncomeService(db, user.id).list(filters)


@app.post("/api/income", status_code=201, response_model=IncomeOut)
def create_income(
    data: IncomeIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return IncomeService(db, user.id).create(data)


@app.get("/api/income/{income_id}", response_model=IncomeOut)
def get_income(
    income_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return IncomeService(db, user.id).get(income_id)


@app.put("/api/income/{income_id}", response_model=IncomeOut)
def update_income(
    income_id: int,
    data: IncomeIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return IncomeService(db, user.id).update(income_id, data)


@app.delete("/api/income/{income_id}", response_model=SuccessOut)
def delete_income(
    income_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    IncomeService(db, user.id).delete(income_id)
    return SuccessOut()


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1970, le=3000),
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user.id).list(month=month, year=year)


@app.post("/api/budgets", response_model=BudgetOut)
def upsert_budget(
    data: BudgetIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user.id).upsert(data)


@app.get("/api/budgets/progress", response_model=list[BudgetProgressOut])
def budget_progress(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1970, le=3000),
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    today = date.today()
    items = BudgetService(db, user.id).progress_for_month(
        year or today.year, month or today.month
    )
    out = []
    for item in items:
        base = BudgetOut.model_validate(item["budget"]).model_dump()
        out.append(
            BudgetProgressOut(
                **base,
                spent=item["spent"],
                remaining=item["remaining"],
                percentage=item["percentage"],
                is_over_budget=item["is_over_budget"],
            )
        )
    return out


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user.id).get(budget_id)


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetUpdateIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return BudgetService(db, user.id).update(budget_id, data)


@app.delete("/api/budgets/{budget_id}", response_model=SuccessOut)
def delete_budget(
    budget_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    BudgetService(db, user.id).delete(budget_id)
    return SuccessOut()


# Goals


@app.get("/api/goals", response_model=list[GoalOut])
def list_goals(
    is_completed: Optional[bool] = Query(None, alias="isCompleted"),
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return GoalService(db, user.id).list(is_completed)


@app.post("/api/goals", status_code=201, response_model=GoalOut)
def create_goal(
    data: GoalIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return GoalService(db, user.id).create(data)


@app.get("/api/goals/{goal_id}", response_model=GoalOut)
def get_goal(
    goal_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return GoalService(db, user.id).get(goal_id)


@app.put("/api/goals/{goal_id}", response_model=GoalOut)
def update_goal(
    goal_id: int,
    data: GoalIn,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return GoalService(db, user.id).update(goal_id, data)


@app.delete("/api/goals/{goal_id}", response_model=SuccessOut)
def delete_goal(
    goal_id: int,
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    GoalService(db, user.id).delete(goal_id)
    return SuccessOut()


# Dashboard


@app.get("/api/dashboard", response_model=DashboardOut)
def dashboard(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=1970, le=3000),
    time_range: int = Query(6, alias="timeRange", ge=1, le=36),
    user: CurrentUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    return DashboardService(db, user.id).summary(month, year, time_range)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
