from sqlalchemy import Column, BigInteger, String, Integer, Boolean, DateTime, Text, Index
from models.base import Base, StorageLocation, enum_column, utcnow


class DataConnection(Base):
    """
    A registered external data source owned by an organization.

    Host and credentials may be rotated; everything else is fixed once the
    connection is created. ``storage_location`` decides how queries against
    this connection are answered.
    """
    __tablename__ = "data_connections"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    organization_id = Column(String(64), nullable=False, index=True)
    internal_name = Column(String(255), nullable=False)

    # Source database
    database_name = Column(String(255), nullable=False)
    database_type = Column(String(32), nullable=False, default="mysql")
    host = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False, default=3306)
    username = Column(String(255), nullable=False)
    password = Column(Text, nullable=False)

    # Optional SSH tunnel
    use_ssh_tunneling = Column(Boolean, nullable=False, default=False)
    ssh_host = Column(String(255), nullable=True)
    ssh_port = Column(Integer, nullable=True)
    ssh_user = Column(String(255), nullable=True)
    ssh_password = Column(Text, nullable=True)
    ssh_private_key = Column(Text, nullable=True)

    storage_location = Column(
        enum_column(StorageLocation),
        nullable=False,
        default=StorageLocation.EXTERNAL
    )

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_data_connections_org_internal_name", "organization_id", "internal_name"),
    )
