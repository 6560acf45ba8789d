"""SQLAlchemy persistence for the VM registry, usage samples, plans and invoices."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Text, create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from vmmeter.exceptions import NameConflict, NotFound, StorageError
from vmmeter.utils import utcnow

Base = declarative_base()


class VirtualMachine(Base):
    __tablename__ = "vms"

    name = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=True)
    plan_id = Column(Integer, nullable=True)
    state = Column(String(16), nullable=False)
    os_key = Column(String(64), nullable=True)
    disk_path = Column(String(1024), nullable=True)
    seed_iso_path = Column(String(1024), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "userId": self.user_id,
            "planId": self.plan_id,
            "state": self.state,
            "osKey": self.os_key,
            "diskPath": self.disk_path,
            "seedIsoPath": self.seed_iso_path,
            "error": self.error,
        }


class UsageSample(Base):
    """Cumulative-since-boot counters. Append-only."""

    __tablename__ = "usage"
    __table_args__ = (Index("ix_usage_vm_name_timestamp", "vm_name", "timestamp"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    vm_name = Column(String(64), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    cpu_user = Column(Integer, nullable=False, default=0)
    cpu_system = Column(Integer, nullable=False, default=0)
    memory_actual = Column(Integer, nullable=False, default=0)
    memory_swap_in = Column(Integer, nullable=False, default=0)


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), unique=True, nullable=False)
    cpu_hourly_cost = Column(Float, nullable=False)
    memory_hourly_cost = Column(Float, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "cpuHourlyCost": self.cpu_hourly_cost,
            "memoryHourlyCost": self.memory_hourly_cost,
        }


class Invoice(Base):
    """Append-only ledger row. Corrections are new rows."""

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=True)
    vm_name = Column(String(64), nullable=True)
    billing_start = Column(DateTime, nullable=False)
    billing_end = Column(DateTime, nullable=False)
    total_cost = Column(Float, nullable=False)
    generation_date = Column(DateTime, nullable=False, default=utcnow)
    usage_details = Column(Text, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "vmName": self.vm_name,
            "billingStart": self.billing_start.isoformat(),
            "billingEnd": self.billing_end.isoformat(),
            "totalCost": self.total_cost,
            "generationDate": self.generation_date.isoformat(),
            "usageDetails": self.usage_details,
        }


class Storage:
    """The one storage handle, built at startup and passed to each component."""

    def __init__(self, url: str, echo: bool = False) -> None:
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.url = url
        self.engine = create_engine(url, echo=echo, connect_args=connect_args)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to create schema: {exc}") from exc

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(f"Storage operation failed: {exc}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # -- VM registry -------------------------------------------------------

    def add_vm(self, vm: VirtualMachine) -> VirtualMachine:
        session = self._sessions()
        try:
            session.add(vm)
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise NameConflict(vm.name) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(f"Failed to record VM '{vm.name}': {exc}") from exc
        finally:
            session.close()
        return vm

    def get_vm(self, name: str) -> Optional[VirtualMachine]:
        with self.session() as session:
            return session.get(VirtualMachine, name)

    def list_vms(self) -> List[VirtualMachine]:
        with self.session() as session:
            return list(session.query(VirtualMachine).order_by(VirtualMachine.name))

    def update_vm(self, name: str, **fields) -> VirtualMachine:
        with self.session() as session:
            vm = session.get(VirtualMachine, name)
            if vm is None:
                raise NotFound(f"VM '{name}' is not registered")
            for key, value in fields.items():
                setattr(vm, key, value)
            return vm

    def remove_vm(self, name: str) -> bool:
        with self.session() as session:
            vm = session.get(VirtualMachine, name)
            if vm is None:
                return False
            session.delete(vm)
            return True

    # -- usage ---------------------------------------------------------------

    def add_usage_samples(self, samples: Sequence[UsageSample]) -> None:
        if not samples:
            return
        with self.session() as session:
            session.add_all(samples)

    def usage_in_window(self, vm_name: str, start: datetime, end: datetime) -> List[UsageSample]:
        with self.session() as session:
            query = (
                session.query(UsageSample)
                .filter(UsageSample.vm_name == vm_name)
                .filter(UsageSample.timestamp >= start)
                .filter(UsageSample.timestamp < end)
                .order_by(UsageSample.timestamp)
            )
            return list(query)

    # -- plans & invoices ----------------------------------------------------

    def add_plan(self, name: str, cpu_hourly_cost: float, memory_hourly_cost: float) -> Plan:
        plan = Plan(name=name, cpu_hourly_cost=cpu_hourly_cost, memory_hourly_cost=memory_hourly_cost)
        with self.session() as session:
            session.add(plan)
        return plan

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        with self.session() as session:
            return session.get(Plan, plan_id)

    def add_invoice(self, invoice: Invoice) -> Invoice:
        with self.session() as session:
            session.add(invoice)
        return invoice

    def list_invoices(self, user_id: Optional[str] = None) -> List[Invoice]:
        with self.session() as session:
            query = session.query(Invoice)
            if user_id is not None:
                query = query.filter(Invoice.user_id == user_id)
            return list(query.order_by(Invoice.id))
