from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from config import get_settings
from database import Base, atomic
from models import Direction, Tag, Transaction, User
from schemas import TagIn, TransactionIn, TransactionUpdateIn
from services import (
    NotFoundError,
    TagService,
    TransactionFilters,
    TransactionService,
)

BASE = datetime(2025, 1, 1, 8, 0)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def make_user(session: Session, email: str = "owner@example.com") -> User:
    user = User(name="Owner", email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def expense(amount: str, when: datetime, **extra) -> TransactionIn:
    return TransactionIn(
        amount=amount,
        description=extra.pop("description", "Purchase"),
        direction=extra.pop("direction", Direction.expense),
        occurred_at=when,
        **extra,
    )


def test_comma_amount_is_normalized_before_persisting() -> None:
    with make_session() as session:
        owner = make_user(session)
        txn = TransactionService(session, owner.id).create(
            TransactionIn(amount="12,50", description=" Lunch ", direction="expense")
        )

        stored = session.scalar(
            select(Transaction.amount_minor).where(Transaction.id == txn.id)
        )
        assert stored == 1250
        assert txn.description == "Lunch"
        assert txn.currency == get_settings().default_currency
        assert txn.occurred_at is not None


def test_invalid_input_is_rejected() -> None:
    with make_session() as session:
        owner = make_user(session)
        service = TransactionService(session, owner.id)

        with pytest.raises(ValueError, match="Invalid amount"):
            service.create(expense("abc", BASE))
        with pytest.raises(ValueError, match="Description"):
            service.create(expense("5", BASE, description="   "))
        with pytest.raises(ValueError, match="currency"):
            service.create(expense("5", BASE, currency="U$D"))
        with pytest.raises(ValidationError):
            TransactionIn(amount="5", description="x", direction="transfer")

        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_unusable_tag_leaves_no_partial_transaction() -> None:
    with make_session() as session:
        owner = make_user(session)
        other = make_user(session, "other@example.com")
        theirs = TagService(session, other.id).create(TagIn(name="Private"))

        with pytest.raises(NotFoundError):
            TransactionService(session, owner.id).create(
                expense("5", BASE, tag_id=theirs.id)
            )
        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_atomic_rolls_back_every_statement_on_failure() -> None:
    with make_session() as session:
        owner = make_user(session)
        with pytest.raises(RuntimeError):
            with atomic(session):
                session.add(Tag(user_id=owner.id, name="A", slug="a"))
                session.flush()
                raise RuntimeError("boom")
        assert session.scalar(select(func.count(Tag.id))) == 0


def test_list_paginates_newest_first() -> None:
    with make_session() as session:
        owner = make_user(session)
        service = TransactionService(session, owner.id)
        for i in range(25):
            service.create(expense(str(i + 1), BASE + timedelta(hours=i)))

        page = service.list(page=2, limit=10)
        assert len(page.items) == 10
        assert page.total == 25
        assert page.pages == 3
        assert page.items[0].occurred_at == BASE + timedelta(hours=14)
        assert page.items[-1].occurred_at == BASE + timedelta(hours=5)

        last = service.list(page=3, limit=10)
        assert len(last.items) == 5
        assert service.list(page=4, limit=10).items == []

        with pytest.raises(ValueError):
            service.list(page=0)
        with pytest.raises(ValueError):
            service.list(limit=101)


def test_list_filters_by_direction_and_tag() -> None:
    with make_session() as session:
        owner = make_user(session)
        tag = TagService(session, owner.id).create(TagIn(name="Groceries"))
        service = TransactionService(session, owner.id)
        service.create(expense("10", BASE, tag_id=tag.id))
        service.create(expense("20", BASE + timedelta(days=1)))
        service.create(
            expense("3000", BASE + timedelta(days=2), direction=Direction.income)
        )

        incomes = service.list(TransactionFilters(direction=Direction.income))
        assert [t.amount_minor for t in incomes.items] == [300000]

        expenses = service.list(TransactionFilters(direction=Direction.expense))
        assert expenses.total == 2

        tagged = service.list(TransactionFilters(tag_id=tag.id))
        assert [t.amount_minor for t in tagged.items] == [1000]
        assert [t.name for t in tagged.items[0].tags] == ["Groceries"]


def test_other_users_transactions_are_not_found() -> None:
    with make_session() as session:
        owner = make_user(session)
        intruder = make_user(session, "intruder@example.com")
        txn = TransactionService(session, owner.id).create(expense("5", BASE))

        theirs = TransactionService(session, intruder.id)
        assert theirs.list().total == 0
        with pytest.raises(NotFoundError):
            theirs.get(txn.id)
        with pytest.raises(NotFoundError):
            theirs.update(txn.id, TransactionUpdateIn(amount="1"))
        with pytest.raises(NotFoundError):
            theirs.delete(txn.id)

        assert TransactionService(session, owner.id).get(txn.id).amount_minor == 500


def test_update_applies_only_given_fields() -> None:
    with make_session() as session:
        owner = make_user(session)
        tag = TagService(session, owner.id).create(TagIn(name="Rent"))
        service = TransactionService(session, owner.id)
        txn = service.create(expense("5", BASE, description="Coffee"))

        updated = service.update(txn.id, TransactionUpdateIn(amount="7,25", tag_id=tag.id))
        assert updated.amount_minor == 725
        assert updated.description == "Coffee"
        assert [t.id for t in updated.tags] == [tag.id]

        untagged = service.update(txn.id, TransactionUpdateIn(tag_id=None))
        assert untagged.tags == []
        assert untagged.amount_minor == 725

        with pytest.raises(ValueError, match="Invalid amount"):
            service.update(txn.id, TransactionUpdateIn(amount="lots"))
        assert service.get(txn.id).amount_minor == 725


def test_delete_removes_row_and_tag_links() -> None:
    with make_session() as session:
        owner = make_user(session)
        tag = TagService(session, owner.id).create(TagIn(name="Fuel"))
        service = TransactionService(session, owner.id)
        txn = service.create(expense("40", BASE, tag_id=tag.id))

        service.delete(txn.id)

        with pytest.raises(NotFoundError):
            service.get(txn.id)
        assert session.get(Tag, tag.id) is not None
        assert TagService(session, owner.id).get_usable(tag.id).transactions == []
