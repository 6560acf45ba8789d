"""Monthly invoice generation from stored usage samples."""

from __future__ import annotations

import json
from datetime import datetime
from typing import List, Optional, Sequence

from vmmeter.constants import KIB_PER_GIB
from vmmeter.db import Invoice, Plan, Storage
from vmmeter.exceptions import InvalidRequest, StorageError
from vmmeter.models import BillingWindow, InvoiceFigures
from vmmeter.utils import log, utcnow


def month_window(year: int, month: int) -> BillingWindow:
    if not 1 <= month <= 12:
        raise InvalidRequest(f"Invalid month {month}")
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return BillingWindow(start=start, end=end)


def previous_month_window(now: datetime) -> BillingWindow:
    """The calendar month before ``now``, as ``[first day, first day of next month)``."""
    if now.month == 1:
        return month_window(now.year - 1, 12)
    return month_window(now.year, now.month - 1)


def parse_month(raw: str) -> BillingWindow:
    """``YYYY-MM`` to that month's window."""
    try:
        moment = datetime.strptime(raw, "%Y-%m")
    except ValueError as exc:
        raise InvalidRequest(f"Invalid month '{raw}': expected YYYY-MM") from exc
    return month_window(moment.year, moment.month)


def compute_invoice_figures(memory_values: Sequence[int], plan: Plan) -> InvoiceFigures:
    """Apply the pricing model to one VM's samples for one window.

    Sample count stands in for hours used, and the mean of the cumulative
    ``memory_actual`` readings (KiB) stands in for resident memory. Both
    are coarse; any correction to the model belongs here.
    """
    cpu_hours = len(memory_values)
    total_memory_gib = sum(memory_values) / KIB_PER_GIB
    avg_memory_gib = total_memory_gib / cpu_hours if cpu_hours else 0.0
    cost = cpu_hours * plan.cpu_hourly_cost + avg_memory_gib * plan.memory_hourly_cost * cpu_hours
    return InvoiceFigures(
        cpu_hours=cpu_hours,
        avg_memory_gib=avg_memory_gib,
        total_memory_gib=total_memory_gib,
        cost=cost,
    )


class BillingAggregator:
    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def run(self, now: Optional[datetime] = None, window: Optional[BillingWindow] = None) -> List[Invoice]:
        """Write one invoice per planned VM for the previous month (or ``window``)."""
        if window is None:
            window = previous_month_window(now or utcnow())
        log("INFO", f"Billing window {window.start.isoformat()} .. {window.end.isoformat()}")
        invoices: List[Invoice] = []
        for vm in self.storage.list_vms():
            if vm.plan_id is None:
                log("DEBUG", f"VM {vm.name} has no plan, skipping")
                continue
            try:
                plan = self.storage.get_plan(vm.plan_id)
                if plan is None:
                    log("WARN", f"No plan {vm.plan_id} for VM {vm.name}, skipping")
                    continue
                samples = self.storage.usage_in_window(vm.name, window.start, window.end)
                figures = compute_invoice_figures([s.memory_actual for s in samples], plan)
                invoice = self.storage.add_invoice(
                    Invoice(
                        user_id=vm.user_id,
                        vm_name=vm.name,
                        billing_start=window.start,
                        billing_end=window.end,
                        total_cost=figures.cost,
                        generation_date=utcnow(),
                        usage_details=json.dumps(figures.summary()),
                    )
                )
            except StorageError as exc:
                log("ERROR", f"Billing VM {vm.name} failed: {exc}")
                continue
            log("SUCCESS", f"Invoice for {vm.name}: {figures.cost:.4f} ({figures.cpu_hours} sample-hours)")
            invoices.append(invoice)
        return invoices
