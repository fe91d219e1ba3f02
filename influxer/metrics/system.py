import platform
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psutil

from .base import Metrics, before_write


class SystemMetrics(Metrics, attributes=("host",)):
    """Host level metrics stamped with the sampling time."""

    @before_write
    def stamp(self) -> None:
        if self.time is None:
            self.time = datetime.now(timezone.utc)
        if self.host is None:
            self.host = platform.node()


class CpuMetrics(
    SystemMetrics,
    attributes=("percent_total", "logical_cores", "physical_cores", "load_1m"),
    required=("percent_total",),
):
    @classmethod
    def sample(cls) -> "CpuMetrics":
        per_core = psutil.cpu_percent(interval=0.1, percpu=True)
        total = (
            sum(per_core) / len(per_core)
            if per_core
            else psutil.cpu_percent(interval=None)
        )
        load_1m: Optional[float] = (
            psutil.getloadavg()[0] if hasattr(psutil, "getloadavg") else None
        )
        return cls(
            percent_total=total,
            logical_cores=psutil.cpu_count(),
            physical_cores=psutil.cpu_count(logical=False),
            load_1m=load_1m,
        )


class MemoryMetrics(
    SystemMetrics,
    attributes=("total", "available", "used", "percent", "swap_used", "swap_percent"),
    required=("percent",),
):
    @classmethod
    def sample(cls) -> "MemoryMetrics":
        virt = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return cls(
            total=virt.total,
            available=virt.available,
            used=virt.used,
            percent=virt.percent,
            swap_used=swap.used,
            swap_percent=swap.percent,
        )


class NetworkMetrics(
    SystemMetrics,
    attributes=("bytes_sent", "bytes_recv", "packets_sent", "packets_recv"),
    required=("bytes_sent", "bytes_recv"),
):
    @classmethod
    def sample(cls) -> "NetworkMetrics":
        totals = psutil.net_io_counters(pernic=False)
        values: Dict[str, Any] = {
            "bytes_sent": totals.bytes_sent,
            "bytes_recv": totals.bytes_recv,
            "packets_sent": totals.packets_sent,
            "packets_recv": totals.packets_recv,
        }
        return cls(values)


DEFAULT_SAMPLERS = [
    CpuMetrics.sample,
    MemoryMetrics.sample,
    NetworkMetrics.sample,
]
