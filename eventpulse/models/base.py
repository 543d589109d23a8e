# SQLAlchemy declarative base for the relational side

from sqlalchemy.orm import declarative_base

Base = declarative_base()
