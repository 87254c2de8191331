"""
API Routes - FastAPI endpoints the dashboard handlers call.

There is no authentication layer here; actor ids travel in request bodies.
All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from slotledger.config import settings
from slotledger.db.models import utc_now
from slotledger.db.session import get_read_db, get_write_db
from slotledger.exceptions import (
    InsufficientFundsError,
    InventoryNotFoundError,
    LedgerError,
    MissingCustomerFieldError,
    NoLinkedOrderError,
    NoStockAvailableError,
    NotRenewableError,
    OrderNotFoundError,
    OrderStateError,
    PartialSettlementFailureError,
    ProductNotFoundError,
    ProductUnavailableError,
    ProfileNotFoundError,
    ReleaseRefusedError,
)
from slotledger.models.api import (
    CredentialItem,
    CredentialLookupRequest,
    CredentialLookupResponse,
    HealthResponse,
    PurchaseRequest,
    ReleaseResponse,
    RenewRequest,
    SettlementResponse,
    StockResponse,
    VoidOrderRequest,
    VoidOrderResponse,
)
from slotledger.models.domain import CustomerDetails, ReleaseResult, SettlementResult
from slotledger.observability.metrics import metrics
from slotledger.services.allocation import AllocationEngine
from slotledger.services.credentials import CredentialService
from slotledger.services.settlement import SettlementService
from slotledger.services.stock import StockSynchronizer

logger = get_logger(__name__)

router = APIRouter()

_NOT_FOUND = (
    OrderNotFoundError,
    ProductNotFoundError,
    ProfileNotFoundError,
    InventoryNotFoundError,
    NoLinkedOrderError,
)
_CONFLICT = (NoStockAvailableError, ReleaseRefusedError, OrderStateError)
_BAD_REQUEST = (NotRenewableError, ProductUnavailableError, MissingCustomerFieldError)


def _status_for(exc: BaseException) -> int:
    if isinstance(exc, _NOT_FOUND):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, InsufficientFundsError):
        return status.HTTP_402_PAYMENT_REQUIRED
    if isinstance(exc, _CONFLICT):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, _BAD_REQUEST):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def ledger_http_error(exc: LedgerError, operation: str) -> HTTPException:
    """Translate a ledger error into the HTTP error the handlers expect."""
    if isinstance(exc, PartialSettlementFailureError):
        if exc.compensated:
            code = _status_for(exc.original)
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
            logger.critical(
                "reconciliation_required_response",
                operation=operation,
                failed_step=exc.step,
                error=str(exc),
            )
        return HTTPException(
            status_code=code,
            detail={
                "error": str(exc.original),
                "failed_step": exc.step,
                "compensated": exc.compensated,
                "reconciliation_required": not exc.compensated,
            },
        )

    code = _status_for(exc)
    if code >= 500:
        metrics.record_error(type(exc).__name__, operation)
        logger.error("ledger_error", operation=operation, error=str(exc))
    return HTTPException(status_code=code, detail=str(exc))


def _settlement_response(result: SettlementResult) -> SettlementResponse:
    return SettlementResponse(
        order_id=result.order_id,
        status=result.status,
        amount=result.split.amount,
        commission=result.split.commission,
        provider_credit=result.split.provider_credit,
        buyer_balance=result.buyer_balance,
        provider_balance=result.provider_balance,
        inventory_slot_id=result.inventory_slot_id,
        starts_at=result.starts_at,
        expires_at=result.expires_at,
    )


def _release_response(result: ReleaseResult) -> ReleaseResponse:
    return ReleaseResponse(
        product_id=result.product_id,
        released_slot_ids=list(result.released_slot_ids),
        account_reactivated=result.account_reactivated,
        stock=result.stock,
    )


# =============================================================================
# Settlement
# =============================================================================


@router.post(
    "/v1/products/{product_id}/purchase",
    response_model=SettlementResponse,
    status_code=status.HTTP_201_CREATED,
)
async def purchase_product(
    product_id: int,
    request: PurchaseRequest,
    db: AsyncSession = Depends(get_write_db),
) -> SettlementResponse:
    """
    Buy one unit of a product.

    Instant products are delivered immediately; on-demand products without
    stock return a ``pending`` order.
    """
    try:
        customer = CustomerDetails(
            name=request.customer_name,
            phone=request.customer_phone,
            extra=request.customer_extra,
        )
        result = await SettlementService(db).purchase(product_id, request.buyer_id, customer=customer)
    except LedgerError as exc:
        raise ledger_http_error(exc, "purchase") from exc
    return _settlement_response(result)


@router.post("/v1/orders/{order_id}/renew", response_model=SettlementResponse)
async def renew_order(
    order_id: int,
    request: RenewRequest,
    db: AsyncSession = Depends(get_write_db),
) -> SettlementResponse:
    """Renew an order: debit buyer, credit provider net of commission, extend expiry."""
    try:
        result = await SettlementService(db).renew(order_id, request.buyer_id)
    except LedgerError as exc:
        raise ledger_http_error(exc, "renew") from exc
    return _settlement_response(result)


@router.post("/v1/slots/{slot_id}/renew", response_model=SettlementResponse)
async def renew_slot(
    slot_id: int,
    request: RenewRequest,
    db: AsyncSession = Depends(get_write_db),
) -> SettlementResponse:
    """Renew the order bound to a slot."""
    try:
        result = await SettlementService(db).renew_slot(slot_id, request.buyer_id)
    except LedgerError as exc:
        raise ledger_http_error(exc, "renew") from exc
    return _settlement_response(result)


@router.post("/v1/orders/{order_id}/fulfill", response_model=SettlementResponse)
async def fulfill_order(
    order_id: int,
    db: AsyncSession = Depends(get_write_db),
) -> SettlementResponse:
    """Deliver a pending on-demand order from stock."""
    try:
        result = await SettlementService(db).fulfill_on_demand(order_id)
    except LedgerError as exc:
        raise ledger_http_error(exc, "fulfill") from exc
    return _settlement_response(result)


@router.post("/v1/orders/{order_id}/reject", response_model=VoidOrderResponse)
async def reject_order(
    order_id: int,
    request: VoidOrderRequest,
    db: AsyncSession = Depends(get_write_db),
) -> VoidOrderResponse:
    """Reject an order: refund in full, free its inventory, resolve its ticket."""
    try:
        result = await SettlementService(db).reject(order_id, request.reason)
    except LedgerError as exc:
        raise ledger_http_error(exc, "rejected") from exc
    return VoidOrderResponse(
        order_id=result.order_id,
        status=result.status,
        refunded=result.refunded,
        buyer_balance=result.buyer_balance,
        released_slot_ids=list(result.released_slot_ids),
        ticket_resolved=result.ticket_resolved,
    )


@router.post("/v1/orders/{order_id}/cancel", response_model=VoidOrderResponse)
async def cancel_order(
    order_id: int,
    request: VoidOrderRequest,
    db: AsyncSession = Depends(get_write_db),
) -> VoidOrderResponse:
    """Cancel an order: refund in full and free its inventory."""
    try:
        result = await SettlementService(db).cancel(order_id, request.reason)
    except LedgerError as exc:
        raise ledger_http_error(exc, "cancelled") from exc
    return VoidOrderResponse(
        order_id=result.order_id,
        status=result.status,
        refunded=result.refunded,
        buyer_balance=result.buyer_balance,
        released_slot_ids=list(result.released_slot_ids),
        ticket_resolved=result.ticket_resolved,
    )


# =============================================================================
# Inventory
# =============================================================================


@router.post("/v1/slots/{slot_id}/release", response_model=ReleaseResponse)
async def release_slot(
    slot_id: int,
    db: AsyncSession = Depends(get_write_db),
) -> ReleaseResponse:
    """Free a slot. Refused while its order still has paid days left."""
    try:
        result = await AllocationEngine(db).release_slot(slot_id, utc_now())
    except LedgerError as exc:
        raise ledger_http_error(exc, "release") from exc
    return _release_response(result)


@router.post("/v1/accounts/{account_id}/release", response_model=ReleaseResponse)
async def release_account(
    account_id: int,
    db: AsyncSession = Depends(get_write_db),
) -> ReleaseResponse:
    """Free every slot of an account and reactivate it."""
    try:
        result = await AllocationEngine(db).release_account(account_id, utc_now())
    except LedgerError as exc:
        raise ledger_http_error(exc, "release") from exc
    return _release_response(result)


@router.post("/v1/inventory/release-lapsed", response_model=list[ReleaseResponse])
async def release_lapsed(db: AsyncSession = Depends(get_write_db)) -> list[ReleaseResponse]:
    """Free inventory held by orders whose paid period has ended (periodic job)."""
    try:
        results = await AllocationEngine(db).release_lapsed(utc_now())
    except LedgerError as exc:
        raise ledger_http_error(exc, "release_lapsed") from exc
    return [_release_response(result) for result in results]


@router.post("/v1/products/{product_id}/stock/sync", response_model=StockResponse)
async def sync_stock(
    product_id: int,
    db: AsyncSession = Depends(get_write_db),
) -> StockResponse:
    """Recompute a product's cached stock from its slots/accounts."""
    try:
        level = await StockSynchronizer(db).sync(product_id)
        await db.commit()
    except LedgerError as exc:
        raise ledger_http_error(exc, "stock_sync") from exc
    return StockResponse(
        product_id=level.product_id, account_type=level.account_type, stock=level.stock
    )


@router.post("/v1/orders/credentials", response_model=CredentialLookupResponse)
async def lookup_credentials(
    request: CredentialLookupRequest,
    db: AsyncSession = Depends(get_read_db),
) -> CredentialLookupResponse:
    """
    Credentials to display for a batch of orders.

    Read-only; resolves orders that lack a slot link by matching their
    credential snapshot against inventory. Unknown fields come back as '-'.
    """
    try:
        items = await CredentialService(db).display_for_order_ids(request.order_ids)
    except LedgerError as exc:
        raise ledger_http_error(exc, "credentials") from exc
    return CredentialLookupResponse(
        items=[
            CredentialItem(
                order_id=item.order_id,
                login=item.login,
                password=item.password,
                profile=item.profile,
                pin=item.pin,
                strategy=item.strategy,
            )
            for item in items
        ]
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "database": "disconnected", "error": str(exc)},
        ) from exc
    return HealthResponse(status="healthy", database="connected", version=settings.api_version)
