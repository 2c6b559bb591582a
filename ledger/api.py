import hmac
import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from escrow.listings import ListingDirectory
from escrow.models import (
    AdminEscrowRequest,
    CreateEscrowRequest,
    DisputeRequest,
    Escrow,
    EscrowActionRequest,
    EscrowListResponse,
    EscrowResponse,
    EscrowStatus,
    ReleaseSummary,
    ResolveDisputeRequest,
)
from escrow.service import EscrowService

from .admin import AdminService
from .auth import HmacTokenIdentityProvider, IdentityProvider, StaticTokenIdentityProvider, bearer_token
from .cashout import CashoutService
from .config import Settings, load_settings
from .db import Storage, utc_now
from .errors import LedgerServiceError, RateLimited, Unauthenticated
from .integrations import LoggingNotifier, Notifier, PayoutProcessor
from .models import (
    AdjustBalanceRequest,
    AdjustmentResponse,
    CashoutDecisionRequest,
    CashoutListResponse,
    CashoutRequestBody,
    CashoutResponse,
    CashoutStatus,
    LedgerHistoryResponse,
    MemberBalance,
    PurchaseRequest,
    RefundTransactionRequest,
    RevenueSummary,
    TransactionListResponse,
    TransactionResponse,
    TransactionType,
)
from .ratelimit import RateLimiter
from .service import LedgerService

logger = logging.getLogger(__name__)


def _default_identity(settings: Settings) -> IdentityProvider:
    if settings.token_secret:
        return HmacTokenIdentityProvider(settings.token_secret)
    logger.warning("LEDGER_TOKEN_SECRET not set, no bearer token will be accepted")
    return StaticTokenIdentityProvider()


def _validation_detail(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid request"


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    identity: Optional[IdentityProvider] = None,
    listings: Optional[ListingDirectory] = None,
    notifier: Optional[Notifier] = None,
    payouts: Optional[PayoutProcessor] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    settings = settings or load_settings()
    storage = storage or Storage(settings.database_url)
    identity = identity or _default_identity(settings)
    notifier = notifier or LoggingNotifier()
    clock = clock or utc_now

    ledger_service = LedgerService(storage)
    escrow_service = EscrowService(ledger_service, listings, notifier=notifier, settings=settings, clock=clock)
    cashout_service = CashoutService(ledger_service, payouts=payouts, notifier=notifier, settings=settings)
    admin_service = AdminService(ledger_service)
    limiter = RateLimiter(storage, limit=settings.rate_limit, window_ms=settings.rate_window_ms, clock=clock)

    app = FastAPI(
        title="Credit Escrow & Ledger API",
        description="Two-tranche credit ledger with escrowed marketplace payments, cashouts and admin corrections",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.storage = storage
    app.state.ledger = ledger_service
    app.state.escrow = escrow_service
    app.state.cashout = cashout_service
    app.state.admin = admin_service
    app.state.limiter = limiter

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request failed: %s", exc.message, extra={"path": request.url.path})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.reason, "detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "invalid_input", "detail": _validation_detail(exc)},
        )

    # ---- dependencies ----

    def current_member(authorization: Optional[str] = Header(default=None)) -> str:
        member_id = identity.verify_token(bearer_token(authorization))
        ledger_service.ensure_member(member_id, is_admin=True if member_id in settings.admin_ids else None)
        return member_id

    def rate_limited(route: str) -> Callable[..., str]:
        def dependency(member_id: str = Depends(current_member)) -> str:
            if not limiter.admit(f"{member_id}:{route}").allowed:
                raise RateLimited("Too many requests, slow down")
            return member_id

        return dependency

    def cron_guard(authorization: Optional[str] = Header(default=None)) -> None:
        if not settings.cron_secret:
            return
        if not hmac.compare_digest(authorization or "", f"Bearer {settings.cron_secret}"):
            raise Unauthenticated("invalid cron secret")

    # ---- system ----

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "credit-escrow-ledger"}

    @app.get("/cron/release-escrow", response_model=ReleaseSummary, tags=["System"])
    def release_due_escrows(_guard: None = Depends(cron_guard)) -> ReleaseSummary:
        return escrow_service.release_due()

    # ---- member ----

    @app.get("/me/balance", response_model=MemberBalance, tags=["Members"])
    def my_balance(member_id: str = Depends(current_member)) -> MemberBalance:
        return ledger_service.get_balance(member_id)

    @app.get("/me/transactions", response_model=LedgerHistoryResponse, tags=["Members"])
    def my_transactions(
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        member_id: str = Depends(current_member),
    ) -> LedgerHistoryResponse:
        return ledger_service.get_ledger_history(member_id, limit, offset)

    # ---- escrow ----

    @app.post("/escrow/create", response_model=EscrowResponse, status_code=status.HTTP_201_CREATED, tags=["Escrow"])
    def create_escrow(
        request: CreateEscrowRequest, member_id: str = Depends(rate_limited("escrow/create"))
    ) -> EscrowResponse:
        return escrow_service.create_escrow(member_id, request.post_type, request.post_id)

    @app.post("/escrow/mark-delivered", response_model=EscrowResponse, tags=["Escrow"])
    def mark_delivered(
        request: EscrowActionRequest, member_id: str = Depends(rate_limited("escrow/mark-delivered"))
    ) -> EscrowResponse:
        return escrow_service.mark_delivered(request.escrow_id, member_id)

    @app.post("/escrow/release", response_model=EscrowResponse, tags=["Escrow"])
    def release_escrow(
        request: EscrowActionRequest, member_id: str = Depends(rate_limited("escrow/release"))
    ) -> EscrowResponse:
        return escrow_service.release(request.escrow_id, member_id)

    @app.post("/escrow/report-dispute", response_model=EscrowResponse, tags=["Escrow"])
    def report_dispute(
        request: DisputeRequest, member_id: str = Depends(rate_limited("escrow/report-dispute"))
    ) -> EscrowResponse:
        return escrow_service.report_dispute(request.escrow_id, member_id, request.reason)

    @app.get("/escrow/{escrow_id}", response_model=Escrow, tags=["Escrow"])
    def get_escrow(escrow_id: UUID, member_id: str = Depends(current_member)) -> Escrow:
        return escrow_service.get_escrow(escrow_id, member_id)

    # ---- cashout ----

    @app.post("/cashout/request", response_model=CashoutResponse, status_code=status.HTTP_201_CREATED, tags=["Cashout"])
    def request_cashout(
        request: CashoutRequestBody, member_id: str = Depends(rate_limited("cashout/request"))
    ) -> CashoutResponse:
        return cashout_service.request_cashout(member_id, request.amount_credits)

    # ---- admin ----

    @app.post("/admin/escrow/cancel-dispute", response_model=EscrowResponse, tags=["Admin"])
    def cancel_dispute(
        request: AdminEscrowRequest, admin_id: str = Depends(rate_limited("admin/escrow/cancel-dispute"))
    ) -> EscrowResponse:
        return escrow_service.cancel_dispute(request.escrow_id, admin_id, request.admin_note)

    @app.post("/admin/escrow/resolve", response_model=EscrowResponse, tags=["Admin"])
    def resolve_dispute(
        request: ResolveDisputeRequest, admin_id: str = Depends(rate_limited("admin/escrow/resolve"))
    ) -> EscrowResponse:
        return escrow_service.resolve_dispute(request.escrow_id, admin_id, request.outcome, request.admin_note)

    @app.post("/admin/escrow/refund", response_model=EscrowResponse, tags=["Admin"])
    def refund_escrow(
        request: AdminEscrowRequest, admin_id: str = Depends(rate_limited("admin/escrow/refund"))
    ) -> EscrowResponse:
        return escrow_service.refund(request.escrow_id, admin_id, request.admin_note)

    @app.get("/admin/escrow/list", response_model=EscrowListResponse, tags=["Admin"])
    def list_escrows(
        status_filter: Optional[EscrowStatus] = Query(None, alias="status"),
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        admin_id: str = Depends(current_member),
    ) -> EscrowListResponse:
        return escrow_service.list_escrows(admin_id, status_filter, limit, offset)

    @app.post("/admin/cashout/approve", response_model=CashoutResponse, tags=["Admin"])
    def approve_cashout(
        request: CashoutDecisionRequest, admin_id: str = Depends(rate_limited("admin/cashout/approve"))
    ) -> CashoutResponse:
        return cashout_service.approve_cashout(request.cashout_id, admin_id, request.admin_note)

    @app.post("/admin/cashout/reject", response_model=CashoutResponse, tags=["Admin"])
    def reject_cashout(
        request: CashoutDecisionRequest, admin_id: str = Depends(rate_limited("admin/cashout/reject"))
    ) -> CashoutResponse:
        return cashout_service.reject_cashout(request.cashout_id, admin_id, request.admin_note)

    @app.get("/admin/cashout/list", response_model=CashoutListResponse, tags=["Admin"])
    def list_cashouts(
        status_filter: Optional[CashoutStatus] = Query(None, alias="status"),
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        admin_id: str = Depends(current_member),
    ) -> CashoutListResponse:
        return cashout_service.list_cashouts(admin_id, status_filter, limit, offset)

    @app.post("/admin/users/adjust-balance", response_model=AdjustmentResponse, tags=["Admin"])
    def adjust_balance(
        request: AdjustBalanceRequest, admin_id: str = Depends(rate_limited("admin/users/adjust-balance"))
    ) -> AdjustmentResponse:
        return admin_service.adjust_balance(admin_id, request.user_id, request.amount, request.reason, request.credit_type)

    @app.post("/admin/transactions/refund", response_model=TransactionResponse, tags=["Admin"])
    def refund_transaction(
        request: RefundTransactionRequest, admin_id: str = Depends(rate_limited("admin/transactions/refund"))
    ) -> TransactionResponse:
        return admin_service.refund_transaction(admin_id, request.transaction_id, request.reason)

    @app.get("/admin/transactions/list", response_model=TransactionListResponse, tags=["Admin"])
    def list_transactions(
        transaction_type: Optional[TransactionType] = Query(None, alias="type"),
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        admin_id: str = Depends(current_member),
    ) -> TransactionListResponse:
        ledger_service.require_admin(admin_id)
        return ledger_service.list_transactions(limit, offset, transaction_type)

    @app.get("/admin/revenue", response_model=RevenueSummary, tags=["Admin"])
    def platform_revenue(admin_id: str = Depends(current_member)) -> RevenueSummary:
        ledger_service.require_admin(admin_id)
        return ledger_service.platform_revenue()

    # ---- payments ----

    @app.post("/purchases", response_model=TransactionResponse, tags=["Payments"])
    def record_purchase(
        request: PurchaseRequest, admin_id: str = Depends(rate_limited("purchases"))
    ) -> TransactionResponse:
        ledger_service.require_admin(admin_id)
        return ledger_service.record_purchase(request.member_id, request.credits, request.external_ref)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    from .log_config import configure_json_logging

    configure_json_logging(app.state.settings.log_level, json_lines=app.state.settings.log_json)
    uvicorn.run(app, host="0.0.0.0", port=8000)
