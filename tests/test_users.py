import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import NotFound, ValidationError
from models import Category
from services import UserService, average_of_salaries, seed_global_categories


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_create_user_starts_without_average_income() -> None:
    with make_session() as session:
        user = UserService(session).create({"name": "  Dana  "})
        assert user.name == "Dana"
        assert user.average_income_cents is None

        with pytest.raises(ValidationError):
            UserService(session).create({"name": "   "})
        with pytest.raises(ValidationError):
            UserService(session).create(
                {"name": "Dana", "average_income_cents": 10**20}
            )


def test_update_average_income() -> None:
    with make_session() as session:
        users = UserService(session)
        user = users.create({"name": "Dana"})

        updated = users.update_average_income(user.id, 310_000)
        assert updated.average_income_cents == 310_000

        with pytest.raises(ValidationError):
            users.update_average_income(user.id, -5)
        with pytest.raises(ValidationError):
            users.update_average_income(user.id, 10**20)
        assert users.get(user.id).average_income_cents == 310_000
        with pytest.raises(NotFound):
            users.update_average_income(user.id + 1, 100)
        with pytest.raises(NotFound):
            users.get(user.id + 1)


def test_average_of_salaries_ignores_gaps() -> None:
    assert average_of_salaries([300_000, 0, None, 310_001, -5]) == 305_001
    assert average_of_salaries([100, 101]) == 101
    assert average_of_salaries([]) == 0
    assert average_of_salaries([0, None]) == 0


def test_seed_global_categories_is_idempotent() -> None:
    with make_session() as session:
        assert seed_global_categories(session, ["Food", " Salary ", "", "Food"]) == 2
        assert seed_global_categories(session, ["Food", "Salary", "Health"]) == 1

        rows = session.scalars(select(Category).order_by(Category.name)).all()
        assert [(c.name, c.user_id) for c in rows] == [
            ("Food", None),
            ("Health", None),
            ("Salary", None),
        ]
