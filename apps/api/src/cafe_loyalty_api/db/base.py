from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase


NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base with a constraint naming convention shared with Alembic."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# Import models to ensure metadata registration for Alembic
try:  # pragma: no cover - import side effects only
    import cafe_loyalty_api.models  # noqa: F401
except ImportError:  # pragma: no cover - partial imports during migrations
    pass
