from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from config import get_settings
from database import atomic
from models import (
    Budget,
    BudgetCategory,
    BudgetPeriod,
    Direction,
    Tag,
    Transaction,
    User,
    transaction_tags,
)
from money import format_minor, parse_amount
from periods import Period, local_now, resolve_period, to_local_naive
from schemas import (
    BudgetCategoryIn,
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
from security import hash_password, verify_password

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
RECENT_LIMIT = 5
CATEGORY_LIMIT = 10

# name, slug, color, icon; mirrors the mobile client's preset tags
DEFAULT_TAGS: list[tuple[str, str, str, Optional[str]]] = [
    ("Food", "food", "#F59E0B", "🍽️"),
    ("Transport", "transport", "#3B82F6", "🚗"),
    ("Bills", "bills", "#6B7280", "💡"),
    ("Shopping", "shopping", "#EC4899", "🛍️"),
    ("Salary", "salary", "#10B981", "💰"),
    ("Other", "other", "#8B5CF6", None),
]

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


class NotFoundError(ValueError):
    pass


class ForbiddenError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class InvalidCredentialsError(ValueError):
    pass


def slugify(value: str) -> str:
    slug = re.sub(r"\s+", "-", value.strip().lower())
    return re.sub(r"[^\w-]", "", slug, flags=re.ASCII)


def _clean_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def seed_default_tags(session: Session) -> int:
    existing = set(
        session.scalars(select(Tag.slug).where(Tag.user_id.is_(None))).all()
    )
    added = 0
    for name, slug, color, icon in DEFAULT_TAGS:
        if slug in existing:
            continue
        session.add(
            Tag(
                user_id=None,
                name=name,
                slug=slug,
                color=color,
                icon=icon,
                is_default=True,
            )
        )
        added += 1
    session.commit()
    if added:
        logger.info(f"default_tags_seeded: added={added}")
    return added


class UserService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _email_owner(self, email: str) -> Optional[int]:
        return self.session.scalar(select(User.id).where(User.email == email))

    def register(self, data: RegisterIn) -> User:
        email = _normalize_email(data.email)
        name = data.name.strip()
        if not name:
            raise ValueError("Name cannot be empty")
        if self._email_owner(email) is not None:
            raise ConflictError("Email already registered")

        user = User(name=name, email=email, password_hash=hash_password(data.password))
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Email already registered") from exc
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, data: LoginIn) -> User:
        user = self.session.scalar(
            select(User).where(User.email == _normalize_email(data.email))
        )
        if not user or not verify_password(data.password, user.password_hash):
            logger.info("login_failed: reason=invalid_credentials")
            raise InvalidCredentialsError("Invalid credentials")
        return user

    def get(self) -> User:
        user = self.session.get(User, self.user_id) if self.user_id else None
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_profile(self, data: ProfileIn) -> User:
        user = self.get()
        name = data.name.strip()
        if not name:
            raise ValueError("Name cannot be empty")
        email = _normalize_email(data.email)
        owner = self._email_owner(email)
        if owner is not None and owner != user.id:
            raise ConflictError("Email already registered")

        user.name = name
        user.email = email
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Email already registered") from exc
        self.session.refresh(user)
        return user

    def change_password(self, data: PasswordChangeIn) -> None:
        user = self.get()
        if not verify_password(data.current_password, user.password_hash):
            raise InvalidCredentialsError("Current password is incorrect")
        user.password_hash = hash_password(data.new_password)
        self.session.commit()
        logger.info(f"password_changed: user_id={user.id}")


class TagService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _visible(self):
        return or_(Tag.user_id == self.user_id, Tag.user_id.is_(None))

    def list_visible(self, include_archived: bool = False) -> list[Tag]:
        stmt = (
            select(Tag)
            .where(self._visible())
            .order_by(
                Tag.is_default.desc(),
                Tag.user_id.is_(None).desc(),
                func.lower(Tag.name),
                Tag.id,
            )
        )
        if not include_archived:
            stmt = stmt.where(Tag.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def get_usable(self, tag_id: int) -> Tag:
        """A tag the user may attach: their own or global, and not archived."""
        tag = self.session.scalar(
            select(Tag).where(
                Tag.id == tag_id, self._visible(), Tag.archived_at.is_(None)
            )
        )
        if not tag:
            raise NotFoundError("Tag not found")
        return tag

    def _get_owned(self, tag_id: int) -> Tag:
        tag = self.session.get(Tag, tag_id)
        if not tag or (tag.user_id is not None and tag.user_id != self.user_id):
            raise NotFoundError("Tag not found")
        if tag.user_id is None:
            raise ForbiddenError("Global tags cannot be modified")
        return tag

    def _slug_taken(self, slug: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Tag.id).where(Tag.user_id == self.user_id, Tag.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(Tag.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: TagIn) -> Tag:
        name = data.name.strip()
        if not name:
            raise ValueError("Tag name cannot be empty")
        slug = slugify(data.slug if data.slug else name)
        if not slug:
            raise ValueError("Tag slug must contain letters or digits")
        if self._slug_taken(slug):
            raise ConflictError("Tag with this slug already exists")

        tag = Tag(
            user_id=self.user_id,
            name=name,
            slug=slug,
            color=_clean_optional(data.color),
            icon=_clean_optional(data.icon),
            is_default=False,
        )
        self.session.add(tag)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Tag with this slug already exists") from exc
        self.session.refresh(tag)
        logger.info(f"tag_created: user_id={self.user_id} tag_id={tag.id}")
        return tag

    def update(self, tag_id: int, data: TagUpdateIn) -> Tag:
        tag = self._get_owned(tag_id)
        fields = data.model_fields_set

        name = tag.name
        if "name" in fields and data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValueError("Tag name cannot be empty")
        slug = tag.slug
        if "slug" in fields and data.slug is not None:
            slug = slugify(data.slug)
            if not slug:
                raise ValueError("Tag slug must contain letters or digits")
            if self._slug_taken(slug, exclude_id=tag.id):
                raise ConflictError("Tag with this slug already exists")

        tag.name = name
        tag.slug = slug
        if "color" in fields:
            tag.color = _clean_optional(data.color)
        if "icon" in fields:
            tag.icon = _clean_optional(data.icon)
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self._get_owned(tag_id)
        with atomic(self.session):
            self.session.execute(
                delete(transaction_tags).where(transaction_tags.c.tag_id == tag.id)
            )
            self.session.execute(
                delete(BudgetCategory).where(BudgetCategory.tag_id == tag.id)
            )
            self.session.expire(tag, ["transactions"])
            self.session.delete(tag)
        logger.info(f"tag_deleted: user_id={self.user_id} tag_id={tag_id}")

    def archive(self, tag_id: int) -> Tag:
        tag = self._get_owned(tag_id)
        if tag.archived_at is None:
            tag.archived_at = datetime.utcnow()
            self.session.commit()
        return tag

    def restore(self, tag_id: int) -> Tag:
        tag = self._get_owned(tag_id)
        if tag.archived_at is not None:
            tag.archived_at = None
            self.session.commit()
        return tag


@dataclass
class TransactionFilters:
    direction: Optional[Direction] = None
    tag_id: Optional[int] = None


@dataclass(frozen=True)
class TransactionPage:
    items: list[Transaction]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def _currency(value: Optional[str]) -> str:
        code = (value or get_settings().default_currency).strip().upper()
        if not _CURRENCY_RE.match(code):
            raise ValueError("Invalid currency code")
        return code

    @staticmethod
    def _description(value: Optional[str]) -> str:
        description = (value or "").strip()
        if not description:
            raise ValueError("Description is required")
        return description

    def create(self, data: TransactionIn) -> Transaction:
        amount_minor = parse_amount(data.amount)
        description = self._description(data.description)
        currency = self._currency(data.currency)
        occurred_at = (
            to_local_naive(data.occurred_at) if data.occurred_at else local_now()
        )
        tag = None
        if data.tag_id is not None:
            tag = TagService(self.session, self.user_id).get_usable(data.tag_id)

        txn = Transaction(
            user_id=self.user_id,
            amount_minor=amount_minor,
            currency=currency,
            direction=data.direction,
            occurred_at=occurred_at,
            description=description,
            merchant=_clean_optional(data.merchant),
            tags=[tag] if tag is not None else [],
        )
        with atomic(self.session):
            self.session.add(txn)
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: user_id={self.user_id} transaction_id={txn.id} "
            f"direction={txn.direction.value} amount={format_minor(amount_minor)}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        # Someone else's transaction is reported exactly like a missing one.
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        if page < 1:
            raise ValueError("page must be at least 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        conditions = [Transaction.user_id == self.user_id]
        if filters.direction:
            conditions.append(Transaction.direction == filters.direction)
        if filters.tag_id is not None:
            conditions.append(Transaction.tags.any(Tag.id == filters.tag_id))

        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(*conditions)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = self.session.scalars(stmt).all()
        return TransactionPage(items=list(items), page=page, limit=limit, total=total)

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_fields_set

        amount_minor = txn.amount_minor
        if "amount" in fields:
            amount_minor = parse_amount(data.amount)
        description = txn.description
        if "description" in fields:
            description = self._description(data.description)
        direction = txn.direction
        if "direction" in fields:
            if data.direction is None:
                raise ValueError("Invalid direction")
            direction = data.direction
        occurred_at = txn.occurred_at
        if "occurred_at" in fields and data.occurred_at is not None:
            occurred_at = to_local_naive(data.occurred_at)
        currency = txn.currency
        if "currency" in fields and data.currency is not None:
            currency = self._currency(data.currency)
        tags = None
        if "tag_id" in fields:
            tags = []
            if data.tag_id is not None:
                tags = [TagService(self.session, self.user_id).get_usable(data.tag_id)]

        with atomic(self.session):
            txn.amount_minor = amount_minor
            txn.description = description
            txn.direction = direction
            txn.occurred_at = occurred_at
            txn.currency = currency
            if "merchant" in fields:
                txn.merchant = _clean_optional(data.merchant)
            if tags is not None:
                txn.tags = tags
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        # Loaded tag links are removed from transaction_tags along with the row.
        with atomic(self.session):
            self.session.delete(txn)
        logger.info(
            f"transaction_deleted: user_id={self.user_id} "
            f"transaction_id={transaction_id}"
        )


class AnalyticsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _window(self, period: Period) -> list:
        conditions = [
            Transaction.user_id == self.user_id,
            Transaction.occurred_at >= period.start,
        ]
        if period.end is not None:
            conditions.append(Transaction.occurred_at < period.end)
        return conditions

    def totals(self, period: Period) -> dict[str, int]:
        stmt = (
            select(
                Transaction.direction,
                func.coalesce(func.sum(Transaction.amount_minor), 0).label("total"),
            )
            .where(*self._window(period))
            .group_by(Transaction.direction)
        )
        sums = {row.direction: int(row.total or 0) for row in self.session.execute(stmt)}
        income = sums.get(Direction.income, 0)
        expense = sums.get(Direction.expense, 0)
        return {"income": income, "expense": expense, "net": income - expense}

    def categories(
        self, period: Period, limit: int = CATEGORY_LIMIT
    ) -> list[dict[str, object]]:
        total = func.sum(Transaction.amount_minor)
        stmt = (
            select(
                Tag.id.label("tag_id"),
                Tag.name,
                Tag.color,
                Tag.icon,
                total.label("total"),
                func.count(Transaction.id).label("txn_count"),
            )
            .select_from(Transaction)
            .join(transaction_tags, transaction_tags.c.transaction_id == Transaction.id)
            .join(Tag, Tag.id == transaction_tags.c.tag_id)
            .where(*self._window(period), Transaction.direction == Direction.expense)
            .group_by(Tag.id, Tag.name, Tag.color, Tag.icon)
            .order_by(total.desc(), Tag.name)
            .limit(limit)
        )
        return [
            {
                "tag_id": row.tag_id,
                "category_name": row.name,
                "category_color": row.color,
                "category_icon": row.icon,
                "total": int(row.total or 0),
                "count": int(row.txn_count or 0),
            }
            for row in self.session.execute(stmt)
        ]

    def recent(self, period: Period, limit: int = RECENT_LIMIT) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(*self._window(period))
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def summary(
        self, period: Optional[str] = None, *, now: Optional[datetime] = None
    ) -> dict[str, object]:
        window = resolve_period(period, now=now)
        return {
            "period": window.slug,
            "start": window.start,
            "end": window.end,
            "totals": self.totals(window),
            "categories": self.categories(window),
            "recent": self.recent(window),
        }


@dataclass(frozen=True)
class BudgetCategoryView:
    id: int
    tag_id: int
    amount_minor: int
    spent_minor: int
    tag_name: Optional[str]
    tag_color: Optional[str]
    tag_icon: Optional[str]


@dataclass(frozen=True)
class BudgetView:
    id: int
    name: str
    amount_minor: int
    spent_minor: int
    period: BudgetPeriod
    start_date: date
    end_date: date
    is_active: bool
    categories: list[BudgetCategoryView] = field(default_factory=list)


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _allocations(self, items: list[BudgetCategoryIn]) -> dict[int, int]:
        tags = TagService(self.session, self.user_id)
        allocations: dict[int, int] = {}
        for item in items:
            if item.tag_id in allocations:
                raise ValueError("Each tag can only be allocated once per budget")
            tags.get_usable(item.tag_id)
            allocations[item.tag_id] = parse_amount(item.amount)
        return allocations

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.id == budget_id, Budget.user_id == self.user_id)
        )
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        name = data.name.strip()
        if not name:
            raise ValueError("Budget name cannot be empty")
        amount_minor = parse_amount(data.amount)
        if data.end_date < data.start_date:
            raise ValueError("End date must be on or after start date")
        allocations = self._allocations(data.categories)

        budget = Budget(
            user_id=self.user_id,
            name=name,
            amount_minor=amount_minor,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            spent_minor=0,
            is_active=True,
        )
        budget.categories = [
            BudgetCategory(tag_id=tag_id, amount_minor=amount, spent_minor=0)
            for tag_id, amount in allocations.items()
        ]
        with atomic(self.session):
            self.session.add(budget)
        logger.info(
            f"budget_created: user_id={self.user_id} budget_id={budget.id} "
            f"allocations={len(allocations)}"
        )
        return budget

    def update(self, budget_id: int, data: BudgetUpdateIn) -> Budget:
        budget = self.get(budget_id)
        fields = data.model_fields_set

        name = budget.name
        if "name" in fields and data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValueError("Budget name cannot be empty")
        amount_minor = budget.amount_minor
        if "amount" in fields:
            amount_minor = parse_amount(data.amount)
        start_date = data.start_date or budget.start_date
        end_date = data.end_date or budget.end_date
        if end_date < start_date:
            raise ValueError("End date must be on or after start date")
        allocations = None
        if "categories" in fields:
            allocations = self._allocations(data.categories or [])

        with atomic(self.session):
            budget.name = name
            budget.amount_minor = amount_minor
            budget.start_date = start_date
            budget.end_date = end_date
            if data.period is not None:
                budget.period = data.period
            if data.is_active is not None:
                budget.is_active = data.is_active
            if allocations is not None:
                # Reuse rows for tags that stay so (budget, tag) stays unique.
                existing = {c.tag_id: c for c in budget.categories}
                kept: list[BudgetCategory] = []
                for tag_id, amount in allocations.items():
                    category = existing.get(tag_id)
                    if category is None:
                        category = BudgetCategory(
                            tag_id=tag_id, amount_minor=amount, spent_minor=0
                        )
                    category.amount_minor = amount
                    kept.append(category)
                budget.categories = kept
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        with atomic(self.session):
            self.session.delete(budget)
        logger.info(f"budget_deleted: user_id={self.user_id} budget_id={budget_id}")

    def _spent(self, budget: Budget, tag_ids: list[int]) -> tuple[int, dict[int, int]]:
        start = datetime.combine(budget.start_date, time.min)
        end = datetime.combine(budget.end_date + timedelta(days=1), time.min)
        conditions = [
            Transaction.user_id == self.user_id,
            Transaction.direction == Direction.expense,
            Transaction.occurred_at >= start,
            Transaction.occurred_at < end,
        ]
        total = int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_minor), 0)).where(
                    *conditions
                )
            ).scalar_one()
            or 0
        )
        if not tag_ids:
            return total, {}

        stmt = (
            select(
                transaction_tags.c.tag_id,
                func.coalesce(func.sum(Transaction.amount_minor), 0).label("spent"),
            )
            .select_from(Transaction)
            .join(transaction_tags, transaction_tags.c.transaction_id == Transaction.id)
            .where(*conditions, transaction_tags.c.tag_id.in_(tag_ids))
            .group_by(transaction_tags.c.tag_id)
        )
        by_tag = {row.tag_id: int(row.spent or 0) for row in self.session.execute(stmt)}
        return total, by_tag

    def _views(self, *conditions) -> list[BudgetView]:
        stmt = (
            select(Budget, BudgetCategory, Tag)
            .outerjoin(BudgetCategory, BudgetCategory.budget_id == Budget.id)
            .outerjoin(Tag, Tag.id == BudgetCategory.tag_id)
            .where(Budget.user_id == self.user_id, *conditions)
            .order_by(Budget.start_date.desc(), Budget.id.desc(), BudgetCategory.id)
        )
        grouped: dict[int, tuple[Budget, list[tuple[BudgetCategory, Optional[Tag]]]]] = {}
        for budget, category, tag in self.session.execute(stmt).all():
            entry = grouped.setdefault(budget.id, (budget, []))
            if category is not None:
                entry[1].append((category, tag))

        views: list[BudgetView] = []
        changed = False
        for budget, rows in grouped.values():
            spent, spent_by_tag = self._spent(budget, [c.tag_id for c, _ in rows])
            if budget.spent_minor != spent:
                budget.spent_minor = spent
                changed = True
            categories: list[BudgetCategoryView] = []
            for category, tag in rows:
                category_spent = spent_by_tag.get(category.tag_id, 0)
                if category.spent_minor != category_spent:
                    category.spent_minor = category_spent
                    changed = True
                categories.append(
                    BudgetCategoryView(
                        id=category.id,
                        tag_id=category.tag_id,
                        amount_minor=category.amount_minor,
                        spent_minor=category_spent,
                        tag_name=tag.name if tag else None,
                        tag_color=tag.color if tag else None,
                        tag_icon=tag.icon if tag else None,
                    )
                )
            views.append(
                BudgetView(
                    id=budget.id,
                    name=budget.name,
                    amount_minor=budget.amount_minor,
                    spent_minor=spent,
                    period=budget.period,
                    start_date=budget.start_date,
                    end_date=budget.end_date,
                    is_active=budget.is_active,
                    categories=categories,
                )
            )

        # spent columns hold the snapshot from the most recent read
        if changed:
            self.session.commit()
        return views

    def list_active(self) -> list[BudgetView]:
        return self._views(Budget.is_active.is_(True))

    def describe(self, budget_id: int) -> BudgetView:
        views = self._views(Budget.id == budget_id)
        if not views:
            raise NotFoundError("Budget not found")
        return views[0]
