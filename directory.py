"""Clinic metadata lookups, cached under ``clinic:{id}``."""

from __future__ import annotations

import logging
from typing import List, Optional

from cache import CacheKeys, CacheTTL
from errors import NotFoundError
from models import Clinic

logger = logging.getLogger(__name__)


class ClinicDirectory:
    def __init__(self, store, cache, ttl: float = CacheTTL.CLINIC) -> None:
        self._store = store
        self._cache = cache
        self._ttl = ttl

    async def find(self, clinic_id: str) -> Optional[Clinic]:
        key = CacheKeys.clinic(clinic_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return Clinic.model_validate(cached)
        clinic = await self._store.get_clinic(clinic_id)
        if clinic is not None:
            await self._cache.set(key, clinic.model_dump(mode="json"), self._ttl)
        return clinic

    async def get(self, clinic_id: str, *, active_only: bool = False) -> Clinic:
        clinic = await self.find(clinic_id)
        if clinic is None or (active_only and not clinic.is_active):
            raise NotFoundError("Clinic not found or inactive")
        return clinic

    async def list_active(self) -> List[Clinic]:
        return await self._store.list_clinics(active_only=True)

    async def create(self, clinic: Clinic) -> Clinic:
        clinic = await self._store.add_clinic(clinic)
        logger.info("Created clinic %s (%s)", clinic.id, clinic.name)
        return clinic

    async def set_doctor_presence(self, clinic_id: str, present: bool) -> Clinic:
        clinic = await self._store.set_doctor_presence(clinic_id, present)
        await self._cache.delete(CacheKeys.clinic(clinic_id))
        if clinic is None:
            raise NotFoundError("Clinic not found")
        return clinic
