"""Credit pack catalog.
Pack sizes, lifetimes and auto-extend eligibility are product configuration kept in
``app/config/credit_packs.json``; Stripe price ids are resolved through ConfigService.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from app.schemas.credits import CreditPack
from common.core.app_error import Errors
from common.core.config_service import ConfigService
from common.ids import PackId
from common.utils.msgspec import SerializationError, decode_json
from common.utils.utils import get_logger

logger = get_logger()

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "config" / "credit_packs.json"


class PackCatalog:
    def __init__(self, config: ConfigService, path: Path = DEFAULT_CATALOG_PATH) -> None:
        self.config = config
        self._path = path
        self._packs = self._load_packs()

    def _load_packs(self) -> dict[PackId, CreditPack]:
        if not self._path.exists():
            logger.warning("Credit pack catalog not found; using an empty catalog", path=str(self._path))
            return {}
        try:
            data = decode_json(self._path.read_bytes())
        except SerializationError:
            logger.exception("Failed to parse credit pack catalog", path=str(self._path))
            raise

        packs: dict[PackId, CreditPack] = {}
        for raw in data.get("packs", []):
            pack = CreditPack.model_validate(raw)
            if pack.price_id_key:
                price_id = self.config.get(pack.price_id_key)
                pack.price_id = str(price_id) if price_id else None
            packs[pack.id] = pack
        return packs

    def list(self) -> list[CreditPack]:
        return list(self._packs.values())

    def find(self, pack_id: str | None) -> CreditPack | None:
        if not pack_id:
            return None
        return self._packs.get(PackId(pack_id))

    def get(self, pack_id: str) -> CreditPack:
        pack = self.find(pack_id)
        if pack is None:
            raise Errors.Credits.UNKNOWN_PACK.create(f"Unknown credit pack '{pack_id}'", details={"pack_id": pack_id})
        return pack

    def by_price_id(self, price_id: str | None) -> CreditPack | None:
        if not price_id:
            return None
        return next((pack for pack in self._packs.values() if pack.price_id == price_id), None)

    def duration(self, pack: CreditPack) -> timedelta:
        """Lifetime a purchase of this pack grants, grace period included."""
        return timedelta(days=pack.duration_days + pack.grace_days)

    def extension_window(self, pack_id: str | None) -> timedelta:
        pack = self.find(pack_id)
        if pack is not None and pack.extension_days:
            return timedelta(days=pack.extension_days)
        return timedelta(days=self.config.credits.default_extension_days)
