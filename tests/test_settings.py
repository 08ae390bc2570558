import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Rollover, TransactionType
from schemas import CategoryIn, PaydaySettings, SettingsPatch
from services import NotFound, SettingsService, SetupIncomplete
from store import DocumentStore


def test_first_load_persists_default_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = DocumentStore(session)
        settings = SettingsService(store, "u1").load()

        assert [c.id for c in settings.income_categories] == ["cat_salary", "cat_bonus"]
        assert settings.expense_categories[0].id == "cat_food"
        assert settings.payday_settings is None
        assert store.get_document("users/u1")["settings"]["incomeCategories"][0] == {
            "id": "cat_salary",
            "name": "Salary",
            "kind": "income",
        }


def test_payday_default_is_applied_only_when_asked() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = SettingsService(DocumentStore(session), "u1")

        assert service.payday_settings(use_default=False) is None
        default = service.payday_settings()
        assert (default.payday, default.rollover) == (25, Rollover.before)

        service.set_payday(PaydaySettings(payday=10, rollover=Rollover.after))
        assert service.payday_settings().payday == 10
        assert service.setup_status(2024)["payday_configured"] is True


def test_update_changes_only_given_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = SettingsService(DocumentStore(session), "u1")
        service.set_payday(PaydaySettings(payday=20))

        settings = service.update(SettingsPatch(initial_balance=500000))

        assert settings.initial_balance == 500000
        assert settings.payday_settings.payday == 20


def test_category_lifecycle_retires_removed_ids() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = SettingsService(DocumentStore(session), "u1")
        pets = service.add_category(CategoryIn(name=" Pets ", kind=TransactionType.expense))

        assert pets.id.startswith("cat_") and len(pets.id) == 11
        assert pets.name == "Pets"
        with pytest.raises(ValueError):
            service.add_category(CategoryIn(name="pets", kind=TransactionType.expense))

        renamed = service.rename_category(pets.id, "Pet care")
        assert renamed.name == "Pet care"
        assert service.registry().name_for(pets.id) == "Pet care"

        service.remove_category(pets.id)
        settings = service.load()
        assert pets.id in settings.retired_category_ids
        assert pets.id not in service.registry()
        assert service.registry().name_for(pets.id) == pets.id
        with pytest.raises(NotFound):
            service.remove_category(pets.id)
        with pytest.raises(NotFound):
            service.rename_category(pets.id, "Again")


def test_reorder_requires_a_full_permutation() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = SettingsService(DocumentStore(session), "u1")

        reordered = service.reorder_categories(
            TransactionType.income, ["cat_bonus", "cat_salary"]
        )
        assert [c.id for c in reordered] == ["cat_bonus", "cat_salary"]
        assert [c.id for c in service.registry().income()] == ["cat_bonus", "cat_salary"]

        with pytest.raises(ValueError):
            service.reorder_categories(TransactionType.income, ["cat_bonus"])
        with pytest.raises(ValueError):
            service.reorder_categories(
                TransactionType.expense, ["cat_food", "cat_food"]
            )


def test_invalid_stored_settings_ask_for_setup() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = DocumentStore(session)
        store.set_document(
            "users/u1", {"settings": {"paydaySettings": {"payday": 40}}}
        )

        with pytest.raises(SetupIncomplete):
            SettingsService(store, "u1").load()
