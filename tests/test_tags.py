from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import BudgetCategory, Direction, Tag, User, transaction_tags
from schemas import BudgetCategoryIn, BudgetIn, TagIn, TagUpdateIn, TransactionIn
from services import (
    BudgetService,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TagService,
    TransactionService,
    seed_default_tags,
    slugify,
)


def make_user(session: Session, email: str = "owner@example.com") -> User:
    user = User(name=email.split("@")[0], email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def test_visible_tags_list_defaults_then_globals_then_own() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        assert seed_default_tags(session) == 6
        assert seed_default_tags(session) == 0

        owner = make_user(session)
        other = make_user(session, "other@example.com")
        session.add(Tag(user_id=None, name="Misc", slug="misc", is_default=False))
        session.commit()

        tags = TagService(session, owner.id)
        tags.create(TagIn(name="Zebra"))
        tags.create(TagIn(name="apple"))
        hidden = tags.create(TagIn(name="Old stuff"))
        tags.archive(hidden.id)
        TagService(session, other.id).create(TagIn(name="Not mine"))

        names = [t.name for t in tags.list_visible()]
        assert names == [
            "Bills",
            "Food",
            "Other",
            "Salary",
            "Shopping",
            "Transport",
            "Misc",
            "apple",
            "Zebra",
        ]


def test_seeded_defaults_match_client_presets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_tags(session)
        rows = session.scalars(select(Tag).order_by(Tag.id)).all()

        assert [t.slug for t in rows] == [
            "food",
            "transport",
            "bills",
            "shopping",
            "salary",
            "other",
        ]
        assert [t.name for t in rows] == [
            "Food",
            "Transport",
            "Bills",
            "Shopping",
            "Salary",
            "Other",
        ]
        assert all(t.is_global and t.is_default and t.color for t in rows)


def test_slug_is_derived_from_name() -> None:
    assert slugify("Eating Out!") == "eating-out"
    assert slugify("  Café  Bills ") == "caf-bills"

    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        owner = make_user(session)
        tag = TagService(session, owner.id).create(TagIn(name="Eating Out!"))
        assert tag.slug == "eating-out"
        assert tag.user_id == owner.id
        assert tag.is_default is False


def test_slug_is_unique_per_user_only() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_tags(session)
        owner = make_user(session)
        other = make_user(session, "other@example.com")

        TagService(session, owner.id).create(TagIn(name="Coffee"))
        with pytest.raises(ConflictError):
            TagService(session, owner.id).create(TagIn(name="Beans", slug="coffee"))

        # same slug for another user, and a slug shadowing a global tag, are fine
        TagService(session, other.id).create(TagIn(name="Coffee"))
        TagService(session, owner.id).create(TagIn(name="Transport"))


def test_global_tags_cannot_be_modified() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_tags(session)
        owner = make_user(session)
        food = session.scalar(select(Tag).where(Tag.slug == "food"))

        tags = TagService(session, owner.id)
        with pytest.raises(ForbiddenError):
            tags.update(food.id, TagUpdateIn(name="Groceries"))
        with pytest.raises(ForbiddenError):
            tags.delete(food.id)
        assert session.get(Tag, food.id).name == "Food"


def test_foreign_and_missing_tags_are_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = make_user(session)
        other = make_user(session, "other@example.com")
        theirs = TagService(session, other.id).create(TagIn(name="Private"))

        tags = TagService(session, owner.id)
        with pytest.raises(NotFoundError):
            tags.update(theirs.id, TagUpdateIn(name="Mine now"))
        with pytest.raises(NotFoundError):
            tags.delete(theirs.id)
        with pytest.raises(NotFoundError):
            tags.delete(9999)


def test_update_only_touches_given_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = make_user(session)
        tags = TagService(session, owner.id)
        tag = tags.create(TagIn(name="Gym", color="#00FF00", icon="🏋️"))

        updated = tags.update(tag.id, TagUpdateIn(name="Fitness"))
        assert updated.name == "Fitness"
        assert updated.slug == "gym"
        assert updated.color == "#00FF00"

        cleared = tags.update(tag.id, TagUpdateIn(color=None))
        assert cleared.color is None
        assert cleared.icon == "🏋️"


def test_deleting_used_tag_keeps_transactions_and_clears_links() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = make_user(session)
        tag = TagService(session, owner.id).create(TagIn(name="Dining"))
        txn = TransactionService(session, owner.id).create(
            TransactionIn(
                amount="12.99",
                description="Lunch",
                direction=Direction.expense,
                occurred_at=datetime(2025, 1, 5, 12, 0),
                tag_id=tag.id,
            )
        )
        BudgetService(session, owner.id).create(
            BudgetIn(
                name="January",
                amount="500",
                period="monthly",
                start_date=date(2025, 1, 1),
                end_date=date(2025, 1, 31),
                categories=[BudgetCategoryIn(tag_id=tag.id, amount="100")],
            )
        )

        TagService(session, owner.id).delete(tag.id)

        txn_after = TransactionService(session, owner.id).get(txn.id)
        assert txn_after.tags == []
        assert session.get(Tag, tag.id) is None
        assert session.scalar(select(func.count()).select_from(transaction_tags)) == 0
        assert session.scalar(select(func.count(BudgetCategory.id))) == 0


def test_archived_tag_is_hidden_and_cannot_be_attached() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = make_user(session)
        tags = TagService(session, owner.id)
        tag = tags.create(TagIn(name="Travel"))

        archived = tags.archive(tag.id)
        assert archived.archived_at is not None
        assert tag.id not in [t.id for t in tags.list_visible()]
        assert tag.id in [t.id for t in tags.list_visible(include_archived=True)]
        with pytest.raises(NotFoundError):
            TransactionService(session, owner.id).create(
                TransactionIn(
                    amount="10",
                    description="Train",
                    direction=Direction.expense,
                    tag_id=tag.id,
                )
            )

        tags.restore(tag.id)
        assert tag.id in [t.id for t in tags.list_visible()]
