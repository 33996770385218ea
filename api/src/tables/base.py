from typing import Any
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import JSON, MetaData


class Base(AsyncAttrs, DeclarativeBase):
    # Named constraints, so alembic autogenerate never emits `None` names
    metadata = MetaData(naming_convention={
        'ix': 'ix_%(column_0_label)s',
        'uq': 'uq_%(table_name)s_%(column_0_name)s',
        'fk': 'fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s',
        'pk': 'pk_%(table_name)s'
    })

    type_annotation_map = {
        dict[str, Any]: JSON
    }
