"""
Record store data model

Notes
-----
Data model class names are prefixed with a 'T', which identifies them as classes that map to database tables.
This naming convention also avoids name collision with the domain model classes, e.g.,

`TAuction` is a data model class vs `AuctionRecord` is a domain model class

"""

from sqlalchemy import String, event
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase, MappedAsDataclass

from kioskauction.chain.model import Address, ObjectId
from kioskauction.domain.auction import AuctionStatus, RecordId
from kioskauction.domain.bid import BidId


class Base(MappedAsDataclass, DeclarativeBase):
    """
    Data model base class.

    All data model classes should extend Base.
    """

    # pylint: disable=too-few-public-methods

    type_annotation_map = {
        RecordId: String(26),
        BidId: String(26),
        ObjectId: String(66),
        Address: String(66),
        AuctionStatus: String(20),
    }


def configure_sqlite_engine(engine: AsyncEngine) -> None:
    """
    sqlite connections are configured as follows. Other databases are left alone.
    - foreign keys are enforced
    - transactions are started with `BEGIN IMMEDIATE`, i.e., the write lock is taken up front. A read-then-write
      transaction would otherwise fail with "database is locked" when another connection is writing concurrently.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        # the driver must not emit its own BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")
