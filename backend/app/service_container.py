from __future__ import annotations

from typing import override

from app.services.balance_projector import BalanceProjector
from app.services.expiry_sweeper import ExpirySweeper
from app.services.low_balance_notifier import LowBalanceNotifier
from app.services.pack_catalog import PackCatalog
from app.services.payment_reconciler import PaymentEventMapper, PaymentReconciler
from app.services.stripe_service import StripeService
from app.tasks.expiry_worker import ExpiryWorker
from common.core.config_service import ConfigService
from common.core.lifecycle import Lifecycle
from common.db.db import Db, DBConfig
from common.utils.utils import cached_classmethod, get_logger
from ledger_db.crud.alerts import BalanceAlertDAO
from ledger_db.crud.balance import BalanceSnapshotDAO
from ledger_db.crud.ledger import LedgerDAO

logger = get_logger()


class Services(Lifecycle):
    """Owns every long-lived handle of the process. Nothing here is a module-level client."""

    config_service: ConfigService
    db: Db

    ledger_dao: LedgerDAO
    snapshot_dao: BalanceSnapshotDAO
    alert_dao: BalanceAlertDAO

    pack_catalog: PackCatalog
    low_balance_notifier: LowBalanceNotifier
    balance_projector: BalanceProjector
    expiry_sweeper: ExpirySweeper
    stripe_service: StripeService
    payment_reconciler: PaymentReconciler
    expiry_worker: ExpiryWorker

    def __init__(self, config_service: ConfigService | None = None, db: Db | None = None) -> None:
        super().__init__()

        # Core infrastructure
        self.config_service = config_service or self._create_config_service()
        self.db = db or self._create_db(self.config_service)

        # Database access objects
        self.ledger_dao = LedgerDAO()
        self.snapshot_dao = BalanceSnapshotDAO()
        self.alert_dao = BalanceAlertDAO()

        # Credit services
        self.pack_catalog = self._create_pack_catalog(self.config_service)
        self.low_balance_notifier = self._create_low_balance_notifier()
        self.balance_projector = BalanceProjector(
            db=self.db,
            ledger_dao=self.ledger_dao,
            snapshot_dao=self.snapshot_dao,
            alert_dao=self.alert_dao,
            packs=self.pack_catalog,
            notifier=self.low_balance_notifier,
            config=self.config_service.credits,
        )
        self.expiry_sweeper = ExpirySweeper(
            db=self.db,
            ledger_dao=self.ledger_dao,
            snapshot_dao=self.snapshot_dao,
            config=self.config_service.sweeper,
            on_user_swept=self.balance_projector.invalidate,
        )

        # Payments
        self.stripe_service = self._create_stripe_service(self.config_service)
        self.payment_reconciler = PaymentReconciler(
            db=self.db,
            ledger_dao=self.ledger_dao,
            projector=self.balance_projector,
            mapper=PaymentEventMapper(self.pack_catalog),
        )

        # Background work
        self.expiry_worker = ExpiryWorker(
            self.expiry_sweeper,
            interval_seconds=self.config_service.sweeper.interval_seconds,
            initial_delay_seconds=self.config_service.sweeper.initial_delay_seconds,
        )

    @override
    async def _start(self) -> None:
        await self.db.start()
        if self.config_service.sweeper.enabled:
            await self.expiry_worker.start()

    @override
    async def _stop(self) -> None:
        await self.expiry_worker.stop()
        await self.db.stop()

    # Protected creation methods for dependency injection/overriding
    def _create_config_service(self) -> ConfigService:
        return ConfigService()

    def _create_db(self, config_service: ConfigService) -> Db:
        return Db(
            DBConfig(
                url=config_service.get_database_url(),
                pool_size=int(config_service.get("database.pool_size", 10)),
                pool_disabled=str(config_service.get("database.pool_disabled", "false")).lower() in ("true", "1", "t", "yes"),
                echo=str(config_service.get("database.echo", "false")).lower() in ("true", "1", "t", "yes"),
            )
        )

    def _create_pack_catalog(self, config_service: ConfigService) -> PackCatalog:
        return PackCatalog(config_service)

    def _create_low_balance_notifier(self) -> LowBalanceNotifier:
        return LowBalanceNotifier()

    def _create_stripe_service(self, config_service: ConfigService) -> StripeService:
        return StripeService(config_service)

    @cached_classmethod
    def instance(cls) -> Services:
        """Get the singleton instance of Services."""
        return Services()
