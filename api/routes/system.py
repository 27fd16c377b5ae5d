"""System information endpoints."""

import psutil
from fastapi import APIRouter

from api.schemas import SystemInfo

router = APIRouter(tags=["system"])

BYTES_PER_MB = 1024 * 1024


@router.get("/system-info", response_model=SystemInfo)
async def get_system_info() -> SystemInfo:
    """Physical memory of this machine.

    The UI compares ``totalRamMb`` against each model's ``estimatedRamMb``
    to warn before downloading a model that will not fit.
    """
    memory = psutil.virtual_memory()
    total_mb = memory.total / BYTES_PER_MB
    return SystemInfo(
        total_ram_mb=round(total_mb),
        total_ram_gb=round(total_mb / 1024, 1),
        available_ram_mb=round(memory.available / BYTES_PER_MB),
    )
