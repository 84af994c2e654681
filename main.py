import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import Base, create_db_engine, make_session_factory, session_scope
from models import Direction, Tag, Transaction, User
from schemas import (
    BudgetIn,
    BudgetUpdateIn,
    LoginIn,
    PasswordChangeIn,
    ProfileIn,
    RegisterIn,
    TagIn,
    TagUpdateIn,
    TransactionIn,
    TransactionUpdateIn,
)
from security import create_access_token, get_current_user_id
from services import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    AnalyticsService,
    BudgetService,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    TagService,
    TransactionFilters,
    TransactionService,
    UserService,
    seed_default_tags,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="PocketLedger API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


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


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    engine = create_db_engine(settings.database_url)
    if settings.auto_create_schema:
        Base.metadata.create_all(engine)
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    with session_scope(app.state.session_factory) as session:
        seed_default_tags(session)
    logger.info(f"startup: version={APP_VERSION} database={engine.url.drivername}")


@app.on_event("shutdown")
def shutdown_event():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.dispose()
        logger.info("shutdown: engine disposed")


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"error": str(exc.detail)},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        loc = ".".join(
            str(part)
            for part in first.get("loc", ())
            if part not in ("body", "query", "path")
        )
        if first.get("type") == "missing":
            message = f"Missing field: {loc}" if loc else "Missing request body"
        elif loc:
            message = f"Invalid {loc}: {first.get('msg')}"
        else:
            message = str(first.get("msg"))
    return JSONResponse({"error": message}, status_code=400)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: method={request.method} path={request.url.path}")
    return JSONResponse({"error": "Server error"}, status_code=500)


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidCredentialsError):
        return HTTPException(status_code=401, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _joined(values: list[str]) -> Optional[str]:
    return ",".join(values) if values else None


def user_to_dict(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def tag_to_dict(tag: Tag) -> dict[str, object]:
    return {
        "id": tag.id,
        "user_id": tag.user_id,
        "name": tag.name,
        "slug": tag.slug,
        "color": tag.color,
        "icon": tag.icon,
        "is_default": tag.is_default,
        "is_global": tag.is_global,
        "archived_at": tag.archived_at.isoformat() if tag.archived_at else None,
    }


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    tags = sorted(txn.tags, key=lambda t: t.name.lower())
    return {
        "id": txn.id,
        "amount_minor": txn.amount_minor,
        "currency": txn.currency,
        "direction": txn.direction.value,
        "description": txn.description,
        "merchant": txn.merchant,
        "occurred_at": txn.occurred_at.isoformat(),
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
        "updated_at": txn.updated_at.isoformat() if txn.updated_at else None,
        "tag_ids": [t.id for t in tags],
        "tag_names": _joined([t.name for t in tags]),
        "tag_colors": _joined([t.color or "" for t in tags]),
        "tag_icons": _joined([t.icon or "" for t in tags]),
    }


@app.get("/api/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/register", status_code=201)
def api_register(data: RegisterIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).register(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"id": user.id, "email": user.email}


@app.post("/api/login")
def api_login(data: LoginIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).authenticate(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "token": create_access_token(user),
        "user": {"id": user.id, "name": user.name, "email": user.email},
    }


@app.get("/api/profile")
def api_get_profile(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    try:
        user = UserService(db, user_id).get()
    except ValueError as exc:
        raise http_error(exc) from exc
    return user_to_dict(user)


@app.put("/api/profile")
def api_update_profile(
    data: ProfileIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        user = UserService(db, user_id).update_profile(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return user_to_dict(user)


@app.put("/api/change-password")
def api_change_password(
    data: PasswordChangeIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        UserService(db, user_id).change_password(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"message": "Password updated"}


@app.get("/api/tags")
def api_list_tags(
    include_archived: bool = False,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    tags = TagService(db, user_id).list_visible(include_archived=include_archived)
    return {"tags": [tag_to_dict(tag) for tag in tags]}


@app.post("/api/tags", status_code=201)
def api_create_tag(
    data: TagIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        tag = TagService(db, user_id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return tag_to_dict(tag)


@app.put("/api/tags/{tag_id}")
def api_update_tag(
    tag_id: int,
    data: TagUpdateIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        tag = TagService(db, user_id).update(tag_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return tag_to_dict(tag)


@app.delete("/api/tags/{tag_id}", status_code=204)
def api_delete_tag(
    tag_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TagService(db, user_id).delete(tag_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/tags/{tag_id}/archive")
def api_archive_tag(
    tag_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        tag = TagService(db, user_id).archive(tag_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return tag_to_dict(tag)


@app.post("/api/tags/{tag_id}/restore")
def api_restore_tag(
    tag_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        tag = TagService(db, user_id).restore(tag_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return tag_to_dict(tag)


def _direction_param(value: Optional[str]) -> Optional[Direction]:
    if not value or value == "all":
        return None
    try:
        return Direction(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid direction") from exc


@app.get("/api/transactions")
def api_list_transactions(
    direction: Optional[str] = None,
    type_: Optional[str] = Query(default=None, alias="type"),
    tag_id: Optional[int] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        direction=_direction_param(direction or type_), tag_id=tag_id
    )
    try:
        result = TransactionService(db, user_id).list(filters, page=page, limit=limit)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "transactions": [transaction_to_dict(txn) for txn in result.items],
        "pagination": {
            "page": result.page,
            "limit": result.limit,
            "total": result.total,
            "pages": result.pages,
        },
    }


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    data: TransactionIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_to_dict(txn)


@app.get("/api/transactions/{transaction_id}")
def api_get_transaction(
    transaction_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_to_dict(txn)


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    data: TransactionUpdateIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_to_dict(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/analytics")
def api_analytics(
    period: str = "month",
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        summary = AnalyticsService(db, user_id).summary(period)
    except ValueError as exc:
        raise http_error(exc) from exc
    summary["recent"] = [transaction_to_dict(txn) for txn in summary["recent"]]
    return summary


@app.get("/api/budgets")
def api_list_budgets(
    user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    return {"budgets": BudgetService(db, user_id).list_active()}


@app.post("/api/budgets", status_code=201)
def api_create_budget(
    data: BudgetIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    service = BudgetService(db, user_id)
    try:
        budget = service.create(data)
        return service.describe(budget.id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int,
    data: BudgetUpdateIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    service = BudgetService(db, user_id)
    try:
        budget = service.update(budget_id, data)
        return service.describe(budget.id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(
    budget_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8080, reload=False)


if __name__ == "__main__":
    main()
