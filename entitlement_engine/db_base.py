"""
Declarative base shared by the ledger, quota plan and event log tables.

Imported by models/ and by database.session.init_db(); it imports nothing
from the engine so any model module can depend on it.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
