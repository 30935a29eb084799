"""Mesh address pool and allocation records for the local allocator."""

from datetime import datetime
from typing import Optional, List
from sqlmodel import Field, Relationship, Index

from vmhost.models.base import TimestampModel, utcnow


class MeshPool(TimestampModel, table=True):
    """Address range on the overlay network handed out to VMs and containers."""

    __tablename__ = "mesh_pools"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True, max_length=64, nullable=False)
    cidr: str = Field(max_length=18, nullable=False, description="e.g. 10.10.10.0/24")
    gateway: str = Field(max_length=15, nullable=False)
    start_ip: str = Field(max_length=15, nullable=False)
    end_ip: str = Field(max_length=15, nullable=False)
    is_active: bool = Field(default=True, index=True)

    allocations: List["MeshAllocation"] = Relationship(
        back_populates="pool",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class MeshAllocation(TimestampModel, table=True):
    """One address held by one owner (a VM name or any other consumer id)."""

    __tablename__ = "mesh_allocations"

    id: Optional[int] = Field(default=None, primary_key=True)
    pool_id: int = Field(foreign_key="mesh_pools.id", index=True, nullable=False)
    owner_id: str = Field(index=True, max_length=128, nullable=False)
    address: str = Field(max_length=15, index=True, nullable=False)
    is_active: bool = Field(default=True, index=True)
    allocated_at: datetime = Field(default_factory=utcnow, nullable=False)
    released_at: Optional[datetime] = Field(default=None)

    pool: Optional[MeshPool] = Relationship(back_populates="allocations")

    __table_args__ = (
        Index("ix_mesh_pool_active", "pool_id", "is_active"),
        Index("ix_mesh_address_active", "address", "is_active"),
    )
