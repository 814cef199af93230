"""
Main Orchestrator for Fintrack

This module ties together all the components and defines the
end-to-end flows for:
1. Manual transactions (validate -> categorize -> persist -> reconcile)
2. Statement import and feed sync
   (parse -> normalize -> deduplicate -> categorize -> batch persist -> reconcile)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Ownership is checked before any row is processed
- Every write is persisted BEFORE its balance delta is applied
- Only the BalanceReconciler touches balances
- Budget evaluation runs after the write, in the background
- Every step is audited

This is the "glue" that keeps the balance invariant true on every path.
"""

from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID

import structlog
from pydantic import ValidationError as PydanticValidationError

from fintrack.audit import AuditLogger, configure_logging, create_correlation_id
from fintrack.budgets import AlertDispatcher, BudgetAlertEvaluator, BudgetService
from fintrack.categorization import Categorizer, load_rules
from fintrack.config import AppSettings, get_settings
from fintrack.ingestion import (
    Deduplicator,
    ImportFileError,
    adapt_feed_transaction,
    detect_bank_format,
    normalize_rows,
    parse_file,
)
from fintrack.models.audit import AuditEventType
from fintrack.models.ledger import (
    IMPORT_SAMPLE_LIMIT,
    Account,
    AccountType,
    BankFormat,
    DraftTransaction,
    ImportResult,
    RowError,
    Transaction,
    TransactionSource,
    utcnow,
)
from fintrack.reconciliation import BalanceReconciler
from fintrack.recurrence import RecurrenceScheduler, RecurringTemplateService
from fintrack.services.notifications import (
    BudgetNotifierInterface,
    LoggingBudgetNotifier,
    SMTPBudgetNotifier,
)
from fintrack.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    NotFoundError,
)
from fintrack.validation import TransactionValidator, ValidationError


logger = structlog.get_logger(__name__)

# Fields a caller may change on an existing transaction
EDITABLE_FIELDS = {
    "account_id",
    "category_id",
    "type",
    "amount",
    "currency",
    "date",
    "description",
    "merchant_name",
    "notes",
    "tags",
}


async def _require_account(
    storage: LedgerStorageInterface,
    account_id: UUID,
    user_id: UUID,
) -> Account:
    account = await storage.get_account(account_id, user_id)
    if account is None:
        raise NotFoundError(f"Account not found: {account_id}")
    return account


class TransactionFlow:
    """
    Orchestrates manual ledger changes.

    Flow for every mutation:
    1. Check ownership (NotFoundError)
    2. Validate (ValidationError)
    3. Persist
    4. Reconcile the balance
    5. Audit
    6. Schedule a budget evaluation
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        reconciler: BalanceReconciler,
        categorizer: Optional[Categorizer] = None,
        validator: Optional[TransactionValidator] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._reconciler = reconciler
        self._categorizer = categorizer or Categorizer()
        self._validator = validator or TransactionValidator()
        self._dispatcher = dispatcher
        self._audit_logger = audit_logger or AuditLogger()

    def _after_commit(self, user_id: UUID) -> None:
        if self._dispatcher:
            self._dispatcher.schedule(user_id)

    async def open_account(
        self,
        user_id: UUID,
        name: str,
        account_type: AccountType = AccountType.CHECKING,
        currency: str = "EUR",
        institution_name: Optional[str] = None,
        external_id: Optional[str] = None,
        external_provider: str = "manual",
    ) -> Account:
        """Create an account; its balance always starts at zero."""
        account = Account(
            user_id=user_id,
            name=name,
            type=account_type,
            currency=currency,
            institution_name=institution_name,
            external_id=external_id,
            external_provider=external_provider,
        )
        return await self._storage.create_account(account)

    async def deactivate_account(self, user_id: UUID, account_id: UUID) -> Account:
        """Accounts are never erased; they are switched off."""
        account = await _require_account(self._storage, account_id, user_id)
        account.is_active = False
        updated = await self._storage.update_account(account)
        logger.info("account_deactivated", account_id=str(account_id))
        return updated

    async def create_transaction(
        self,
        user_id: UUID,
        account_id: UUID,
        payload: dict[str, Any],
        category_id: Optional[UUID] = None,
        notes: Optional[str] = None,
        tags: Optional[list[str]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Record a manually entered transaction.

        Args:
            payload: date, amount (unsigned), type, description and
                optionally currency and merchant_name
            category_id: Chosen by the user (confidence 1.0). When None the
                rule-based categorizer picks one.

        Raises:
            NotFoundError: Account or category not owned by the user
            ValidationError: Payload failed schema validation
        """
        correlation_id = correlation_id or create_correlation_id()

        account = await _require_account(self._storage, account_id, user_id)
        draft = self._validator.require_valid({"currency": account.currency, **payload})

        if category_id:
            category = await self._storage.get_category(category_id, user_id)
            if category is None:
                raise NotFoundError(f"Category not found: {category_id}")
            categorization = Categorizer.manual(category)
        else:
            categorization = self._categorizer.categorize(
                draft, await self._storage.list_categories(user_id)
            )

        try:
            transaction = Transaction(
                user_id=user_id,
                account_id=account_id,
                category_id=categorization.category_id,
                type=draft.type,
                amount=draft.amount,
                currency=draft.currency,
                date=draft.date,
                description=draft.description,
                merchant_name=draft.merchant_name,
                notes=notes,
                tags=tags or [],
                category_confidence=categorization.confidence,
                source=TransactionSource.MANUAL,
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        await self._storage.insert_transaction(transaction)
        await self._reconciler.apply_create(transaction, correlation_id)
        await self._audit_logger.log_transaction_changed(
            event_type=AuditEventType.TRANSACTION_CREATED,
            transaction_id=transaction.id,
            user_id=user_id,
            details={
                "amount": str(transaction.amount),
                "type": transaction.type.value,
                "category_rule": categorization.rule,
            },
            correlation_id=correlation_id,
        )
        self._after_commit(user_id)
        return transaction

    async def update_transaction(
        self,
        user_id: UUID,
        transaction_id: UUID,
        changes: dict[str, Any],
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Edit a transaction.

        Choosing a category by hand upgrades its confidence to 1.0.
        Amount, type or account changes reverse the old delta and apply
        the new one.

        Raises:
            NotFoundError: Unknown transaction, account or category
            ValidationError: Edited transaction is invalid
        """
        correlation_id = correlation_id or create_correlation_id()

        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot edit fields: {', '.join(sorted(unknown))}")

        original = await self._storage.get_transaction(transaction_id, user_id)
        if original is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        changes = dict(changes)
        if changes.get("account_id") and changes["account_id"] != original.account_id:
            await _require_account(self._storage, changes["account_id"], user_id)

        recategorized = False
        if changes.get("category_id") and changes["category_id"] != original.category_id:
            if await self._storage.get_category(changes["category_id"], user_id) is None:
                raise NotFoundError(f"Category not found: {changes['category_id']}")
            changes["category_confidence"] = 1.0
            recategorized = True

        try:
            updated = Transaction.model_validate({**original.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        await self._storage.update_transaction(updated)
        await self._reconciler.apply_edit(original, updated, correlation_id)

        await self._audit_logger.log_transaction_changed(
            event_type=AuditEventType.TRANSACTION_UPDATED,
            transaction_id=transaction_id,
            user_id=user_id,
            details={"fields": sorted(changes)},
            correlation_id=correlation_id,
        )
        if recategorized:
            await self._audit_logger.log_transaction_changed(
                event_type=AuditEventType.TRANSACTION_RECATEGORIZED,
                transaction_id=transaction_id,
                user_id=user_id,
                details={"category_id": str(updated.category_id)},
                correlation_id=correlation_id,
            )
        self._after_commit(user_id)
        return updated

    async def recategorize(
        self,
        user_id: UUID,
        transaction_id: UUID,
        category_id: UUID,
    ) -> Transaction:
        return await self.update_transaction(
            user_id, transaction_id, {"category_id": category_id}
        )

    async def delete_transaction(
        self,
        user_id: UUID,
        transaction_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Remove a transaction and take its effect off the balance.

        Raises:
            NotFoundError: Unknown transaction
        """
        correlation_id = correlation_id or create_correlation_id()

        transaction = await self._storage.get_transaction(transaction_id, user_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        deleted = await self._storage.delete_transaction(transaction_id)
        if deleted is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        await self._reconciler.apply_delete(deleted, correlation_id)
        await self._audit_logger.log_transaction_changed(
            event_type=AuditEventType.TRANSACTION_DELETED,
            transaction_id=transaction_id,
            user_id=user_id,
            details={"amount": str(deleted.amount), "type": deleted.type.value},
            correlation_id=correlation_id,
        )
        self._after_commit(user_id)
        return deleted


class ImportFlow:
    """
    Orchestrates bulk ingestion.

    Flow:
    1. Ownership check (NotFoundError, before any row)
    2. Parse the file (ImportFileError for an unusable file)
    3. Normalize rows; bad rows become row errors
    4. Deduplicate against storage and within the batch
    5. Categorize
    6. Persist the whole batch in one write
    7. Apply ONE net balance delta for what was persisted
    8. Schedule a budget evaluation
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        reconciler: BalanceReconciler,
        categorizer: Optional[Categorizer] = None,
        validator: Optional[TransactionValidator] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        audit_logger: Optional[AuditLogger] = None,
        app_settings: Optional[AppSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._reconciler = reconciler
        self._categorizer = categorizer or Categorizer()
        self._settings = app_settings or get_settings().app
        self._validator = validator or TransactionValidator(self._settings)
        self._dispatcher = dispatcher
        self._audit_logger = audit_logger or AuditLogger()
        self._clock = clock

    async def import_file(
        self,
        user_id: UUID,
        account_id: UUID,
        content: bytes,
        filename: str,
        correlation_id: Optional[UUID] = None,
    ) -> ImportResult:
        """
        Import a bank statement export into an account.

        Raises:
            NotFoundError: Account not owned by the user
            ImportFileError: The file cannot be used at all
            PersistenceError: The batch write failed (no balance change)
        """
        correlation_id = correlation_id or create_correlation_id()
        account = await _require_account(self._storage, account_id, user_id)

        await self._audit_logger.log_import_started(
            account_id=account_id,
            user_id=user_id,
            filename=filename,
            size_bytes=len(content),
            correlation_id=correlation_id,
        )

        try:
            rows = parse_file(
                content,
                filename,
                max_size_bytes=self._settings.max_upload_size_bytes,
                supported_formats=self._settings.supported_formats_list,
            )
        except ImportFileError as e:
            await self._audit_logger.log_import_failed(
                account_id=account_id,
                user_id=user_id,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise

        bank_format = detect_bank_format(rows[0].keys())
        drafts, row_errors = normalize_rows(
            rows,
            bank_format,
            default_currency=account.currency or self._settings.default_currency,
        )

        result = await self._ingest(
            user_id,
            account,
            drafts,
            row_errors,
            bank_format,
            TransactionSource.IMPORT,
            correlation_id,
        )

        await self._audit_logger.log_import_completed(
            account_id=account_id,
            user_id=user_id,
            bank_format=bank_format.value,
            imported=result.imported,
            duplicates=result.duplicates,
            errors=result.errors,
            correlation_id=correlation_id,
        )
        return result

    async def sync_feed(
        self,
        user_id: UUID,
        account_id: UUID,
        records: list[dict[str, Any]],
        correlation_id: Optional[UUID] = None,
    ) -> ImportResult:
        """
        Ingest records pulled from an external bank feed.

        Records already stored (same external id or same import hash) are
        counted as duplicates. The account's last_synced_at is updated.

        Raises:
            NotFoundError: Account not owned by the user
            PersistenceError: The batch write failed (no balance change)
        """
        correlation_id = correlation_id or create_correlation_id()
        account = await _require_account(self._storage, account_id, user_id)

        drafts: list[DraftTransaction] = []
        row_errors: list[RowError] = []
        for row_number, record in enumerate(records, start=1):
            try:
                draft = adapt_feed_transaction(
                    record,
                    default_currency=account.currency or self._settings.default_currency,
                )
            except ValueError as e:
                row_errors.append(RowError(row_number=row_number, row=dict(record), error=str(e)))
                continue
            drafts.append(draft.model_copy(update={"row_number": row_number}))

        result = await self._ingest(
            user_id,
            account,
            drafts,
            row_errors,
            BankFormat.FEED,
            TransactionSource.FEED,
            correlation_id,
        )

        account = await _require_account(self._storage, account_id, user_id)
        account.last_synced_at = self._clock()
        await self._storage.update_account(account)

        await self._audit_logger.log_feed_synced(
            account_id=account_id,
            user_id=user_id,
            imported=result.imported,
            duplicates=result.duplicates,
            correlation_id=correlation_id,
        )
        return result

    async def _persist(self, batch: list[Transaction]) -> tuple[list[Transaction], int]:
        """
        Write the batch in one call.

        If a concurrent writer inserted one of the hashes in the meantime,
        the batch is retried row by row and the collisions are counted as
        duplicates.

        Returns:
            (persisted transactions, late duplicates)
        """
        if not batch:
            return [], 0
        try:
            return await self._storage.insert_transactions(batch), 0
        except DuplicateError:
            logger.warning("import_batch_collision", size=len(batch))

        persisted = []
        late_duplicates = 0
        for transaction in batch:
            try:
                persisted.append(await self._storage.insert_transaction(transaction))
            except DuplicateError:
                late_duplicates += 1
        return persisted, late_duplicates

    async def _ingest(
        self,
        user_id: UUID,
        account: Account,
        drafts: list[DraftTransaction],
        row_errors: list[RowError],
        bank_format: BankFormat,
        source: TransactionSource,
        correlation_id: UUID,
    ) -> ImportResult:
        categories = await self._storage.list_categories(user_id)
        deduplicator = Deduplicator(self._storage)

        errors = list(row_errors)
        duplicate_samples: list[dict] = []
        duplicates = 0
        batch: list[Transaction] = []

        for draft in drafts:
            validation, _ = self._validator.validate(draft)
            if validation.has_errors:
                errors.append(RowError(
                    row_number=draft.row_number,
                    row=draft.raw,
                    error=validation.error_message(),
                ))
                continue

            is_duplicate, import_hash = await deduplicator.check(user_id, draft)
            if is_duplicate:
                duplicates += 1
                if len(duplicate_samples) < IMPORT_SAMPLE_LIMIT:
                    duplicate_samples.append(draft.summary())
                continue

            categorization = self._categorizer.categorize(draft, categories)
            try:
                transaction = Transaction(
                    user_id=user_id,
                    account_id=account.id,
                    category_id=categorization.category_id,
                    type=draft.type,
                    amount=draft.amount,
                    currency=draft.currency,
                    date=draft.date,
                    description=draft.description,
                    merchant_name=draft.merchant_name,
                    import_hash=import_hash,
                    external_id=draft.external_id,
                    category_confidence=categorization.confidence,
                    source=source,
                )
            except PydanticValidationError as e:
                errors.append(RowError(row_number=draft.row_number, row=draft.raw, error=str(e)))
                continue
            batch.append(transaction)

        persisted, late_duplicates = await self._persist(batch)
        duplicates += late_duplicates

        balance = await self._reconciler.apply_bulk(account.id, persisted, correlation_id)
        if persisted and self._dispatcher:
            self._dispatcher.schedule(user_id)

        logger.info(
            "ingestion_completed",
            account_id=str(account.id),
            bank_format=bank_format.value,
            imported=len(persisted),
            duplicates=duplicates,
            errors=len(errors),
        )

        return ImportResult(
            account_id=account.id,
            bank_format=bank_format,
            imported=len(persisted),
            duplicates=duplicates,
            errors=len(errors),
            account_balance=balance,
            duplicate_samples=duplicate_samples,
            error_samples=errors[:IMPORT_SAMPLE_LIMIT],
            transaction_ids=[t.id for t in persisted],
        )


class FinanceEngine:
    """Every wired component of one running engine."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        audit_storage: AuditStorageInterface,
        audit_logger: AuditLogger,
        reconciler: BalanceReconciler,
        notifier: BudgetNotifierInterface,
        evaluator: BudgetAlertEvaluator,
        dispatcher: AlertDispatcher,
        budgets: BudgetService,
        templates: RecurringTemplateService,
        scheduler: RecurrenceScheduler,
        transactions: TransactionFlow,
        imports: ImportFlow,
    ):
        self.storage = storage
        self.audit_storage = audit_storage
        self.audit_logger = audit_logger
        self.reconciler = reconciler
        self.notifier = notifier
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.budgets = budgets
        self.templates = templates
        self.scheduler = scheduler
        self.transactions = transactions
        self.imports = imports

    async def shutdown(self) -> None:
        """Stop the scheduler and let pending budget evaluations finish."""
        await self.scheduler.stop()
        await self.dispatcher.drain()


def _create_storage(backend: str) -> tuple[LedgerStorageInterface, AuditStorageInterface]:
    if backend == "google_sheets":
        try:
            sheets_client = GoogleSheetsClient()
            return (
                GoogleSheetsLedgerStorage(sheets_client),
                GoogleSheetsAuditStorage(sheets_client),
            )
        except PydanticValidationError as e:
            # Storage not configured - continue in memory
            logger.error("google_sheets_not_configured", error=str(e))

    return InMemoryLedgerStorage(), InMemoryAuditStorage()


def _create_notifier() -> BudgetNotifierInterface:
    try:
        return SMTPBudgetNotifier(get_settings().smtp)
    except PydanticValidationError:
        logger.info("smtp_not_configured", fallback="log")
        return LoggingBudgetNotifier()


def create_engine_components(
    storage_backend: Optional[str] = None,
    notifier: Optional[BudgetNotifierInterface] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FinanceEngine:
    """
    Factory function to create all engine components.

    Args:
        storage_backend: "memory" or "google_sheets"; defaults to settings
        notifier: Alert channel; SMTP when configured, else log-only
        clock: Time source shared by the scheduler, evaluator and flows

    Returns:
        A FinanceEngine; call `engine.scheduler.start()` inside a running
        event loop to begin sweeping.
    """
    settings = get_settings()
    app_settings = settings.app
    configure_logging(app_settings.effective_log_level)

    storage, audit_storage = _create_storage(storage_backend or settings.storage.backend)
    audit_logger = AuditLogger(audit_storage)

    reconciler = BalanceReconciler(storage, audit_logger)
    categorizer = Categorizer(load_rules(app_settings.categorization_rules_path))
    validator = TransactionValidator(app_settings, clock=clock)

    notifier = notifier or _create_notifier()
    evaluator = BudgetAlertEvaluator(storage, notifier, audit_logger, clock=clock)
    dispatcher = AlertDispatcher(evaluator)

    scheduler_settings = settings.scheduler
    scheduler = RecurrenceScheduler(
        storage,
        reconciler,
        dispatcher=dispatcher,
        audit_logger=audit_logger,
        clock=clock,
        interval_seconds=scheduler_settings.interval_seconds,
        run_on_start=scheduler_settings.run_on_start,
    )

    logger.info(
        "engine_components_created",
        environment=app_settings.app_environment,
        storage=type(storage).__name__,
        notifier=type(notifier).__name__,
    )

    return FinanceEngine(
        storage=storage,
        audit_storage=audit_storage,
        audit_logger=audit_logger,
        reconciler=reconciler,
        notifier=notifier,
        evaluator=evaluator,
        dispatcher=dispatcher,
        budgets=BudgetService(storage, evaluator, dispatcher),
        templates=RecurringTemplateService(storage),
        scheduler=scheduler,
        transactions=TransactionFlow(
            storage,
            reconciler,
            categorizer=categorizer,
            validator=validator,
            dispatcher=dispatcher,
            audit_logger=audit_logger,
        ),
        imports=ImportFlow(
            storage,
            reconciler,
            categorizer=categorizer,
            validator=validator,
            dispatcher=dispatcher,
            audit_logger=audit_logger,
            app_settings=app_settings,
            clock=clock,
        ),
    )
