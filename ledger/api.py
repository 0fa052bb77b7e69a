import hmac
import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .errors import AdminAuthError, LedgerError
from .models import (
    Account,
    AddBankAccountRequest,
    AdjustmentDirection,
    AdminAdjustmentRequest,
    AggregateStats,
    BankAccount,
    CreateTaskRequest,
    DailyBonusRunRequest,
    DailyBonusRunResult,
    DepositQuote,
    DepositRequest,
    LedgerHistoryResponse,
    ReconciliationReport,
    RegisterAccountRequest,
    ReviewRequest,
    SettleRequest,
    Task,
    Transaction,
    TransactionKind,
    TransactionStatus,
    WithdrawalRequestBody,
)
from .service import LedgerService


def verify_admin_credential(supplied: Optional[str], settings: Settings) -> None:
    expected = settings.admin_password
    if not expected:
        raise AdminAuthError("Admin access is not configured")
    if supplied is None or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise AdminAuthError()


def create_app(service: Optional[LedgerService] = None, settings: Optional[Settings] = None,
               root_path: str = "") -> FastAPI:
    settings = settings or (service.settings if service else get_settings())
    service = service or LedgerService(settings=settings)

    logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    app = FastAPI(
        title="Rewards Ledger API",
        description="Balance ledger and reward settlement for tasks, ads, deposits and withdrawals",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": str(exc), "reason": exc.reason, "retryable": exc.retryable},
        )

    def require_admin(x_admin_password: Optional[str] = Header(default=None)) -> None:
        verify_admin_credential(x_admin_password, settings)

    admin = [Depends(require_admin)]

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "rewards-ledger"}

    # Accounts

    @app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    def register_account(request: RegisterAccountRequest) -> Account:
        return service.register_account(request)

    @app.get("/accounts/{account_id}", response_model=Account, tags=["Accounts"])
    def get_account(account_id: UUID) -> Account:
        return service.get_account(account_id)

    @app.get("/accounts/{account_id}/transactions", response_model=LedgerHistoryResponse, tags=["Accounts"])
    def get_account_ledger(account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return service.get_ledger_history(account_id, limit, offset)

    # Earning

    @app.get("/tasks", response_model=list[Task], tags=["Tasks"])
    def list_active_tasks() -> list[Task]:
        return service.list_tasks(active_only=True)

    @app.post("/accounts/{account_id}/tasks/{task_id}/complete", response_model=Transaction,
              status_code=status.HTTP_201_CREATED, tags=["Tasks"])
    def complete_task(account_id: UUID, task_id: UUID) -> Transaction:
        return service.complete_task(account_id, task_id)

    @app.post("/accounts/{account_id}/ad-views", response_model=Transaction,
              status_code=status.HTTP_201_CREATED, tags=["Tasks"])
    def reward_ad_view(account_id: UUID) -> Transaction:
        return service.reward_ad_view(account_id)

    # Deposits

    @app.get("/accounts/{account_id}/deposits/quote", response_model=DepositQuote, tags=["Deposits"])
    def quote_deposit(account_id: UUID, amount: Decimal) -> DepositQuote:
        return service.quote_deposit(account_id, amount)

    @app.post("/accounts/{account_id}/deposits", response_model=Transaction,
              status_code=status.HTTP_201_CREATED, tags=["Deposits"])
    def request_deposit(account_id: UUID, request: DepositRequest) -> Transaction:
        return service.request_deposit(account_id, request.amount, request.reference)

    # Withdrawals

    @app.get("/accounts/{account_id}/bank-accounts", response_model=list[BankAccount], tags=["Withdrawals"])
    def list_bank_accounts(account_id: UUID) -> list[BankAccount]:
        return service.list_bank_accounts(account_id)

    @app.post("/accounts/{account_id}/bank-accounts", response_model=BankAccount,
              status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
    def add_bank_account(account_id: UUID, request: AddBankAccountRequest) -> BankAccount:
        return service.add_bank_account(account_id, request)

    @app.post("/accounts/{account_id}/withdrawals", response_model=Transaction,
              status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
    def request_withdrawal(account_id: UUID, request: WithdrawalRequestBody) -> Transaction:
        return service.request_withdrawal(account_id, request.amount, request.bank_account_id)

    # Admin

    @app.get("/admin/accounts", response_model=list[Account], dependencies=admin, tags=["Admin"])
    def admin_list_accounts() -> list[Account]:
        return service.list_accounts()

    @app.get("/admin/transactions", response_model=list[Transaction], dependencies=admin, tags=["Admin"])
    def admin_list_transactions(kind: Optional[TransactionKind] = None,
                                status: Optional[TransactionStatus] = None) -> list[Transaction]:
        return service.list_transactions(kind=kind, status=status)

    @app.post("/admin/accounts/{account_id}/settlements", response_model=Optional[Transaction],
              dependencies=admin, tags=["Admin"])
    def admin_settle(account_id: UUID, request: SettleRequest) -> Optional[Transaction]:
        return service.settle(account_id, request.rule, request.params)

    @app.post("/admin/accounts/{account_id}/adjustments", response_model=Transaction,
              status_code=status.HTTP_201_CREATED, dependencies=admin, tags=["Admin"])
    def admin_adjust(account_id: UUID, request: AdminAdjustmentRequest) -> Transaction:
        return service.adjust_balance(
            account_id, request.amount,
            debit=request.direction == AdjustmentDirection.DEBIT,
            description=request.description,
        )

    @app.post("/admin/tasks", response_model=Task, status_code=status.HTTP_201_CREATED,
              dependencies=admin, tags=["Admin"])
    def admin_create_task(request: CreateTaskRequest) -> Task:
        return service.create_task(request)

    @app.post("/admin/tasks/{task_id}/deactivate", response_model=Task, dependencies=admin, tags=["Admin"])
    def admin_deactivate_task(task_id: UUID) -> Task:
        return service.deactivate_task(task_id)

    @app.post("/admin/deposits/{transaction_id}/confirm", response_model=Transaction,
              dependencies=admin, tags=["Admin"])
    def admin_confirm_deposit(transaction_id: UUID) -> Transaction:
        return service.confirm_deposit(transaction_id)

    @app.post("/admin/deposits/{transaction_id}/fail", response_model=Transaction,
              dependencies=admin, tags=["Admin"])
    def admin_fail_deposit(transaction_id: UUID) -> Transaction:
        return service.fail_deposit(transaction_id)

    @app.post("/admin/bank-accounts/{bank_account_id}/verify", response_model=BankAccount,
              dependencies=admin, tags=["Admin"])
    def admin_verify_bank_account(bank_account_id: UUID) -> BankAccount:
        return service.verify_bank_account(bank_account_id)

    @app.post("/admin/withdrawals/{transaction_id}/approve", response_model=Transaction,
              dependencies=admin, tags=["Admin"])
    def admin_approve_withdrawal(transaction_id: UUID) -> Transaction:
        return service.approve_withdrawal(transaction_id)

    @app.post("/admin/withdrawals/{transaction_id}/reject", response_model=Transaction,
              dependencies=admin, tags=["Admin"])
    def admin_reject_withdrawal(transaction_id: UUID, request: ReviewRequest) -> Transaction:
        return service.reject_withdrawal(transaction_id, request.reason)

    @app.post("/admin/daily-bonus/run", response_model=DailyBonusRunResult, dependencies=admin, tags=["Admin"])
    def admin_run_daily_bonus(request: DailyBonusRunRequest) -> DailyBonusRunResult:
        return service.run_daily_bonus(request.cycle)

    @app.get("/admin/statistics", response_model=AggregateStats, dependencies=admin, tags=["Admin"])
    def admin_statistics(refresh: bool = False) -> AggregateStats:
        return service.read_ledger_snapshot(refresh=refresh)

    @app.get("/admin/reconciliation", response_model=ReconciliationReport, dependencies=admin, tags=["Admin"])
    def admin_reconciliation() -> ReconciliationReport:
        return service.audit_ledger()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
