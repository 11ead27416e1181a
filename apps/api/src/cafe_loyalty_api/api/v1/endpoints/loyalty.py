"""API endpoints for loyalty cards, points awards, summaries and redemptions."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, NoReturn, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_loyalty_api.api.dependencies.security import require_staff_api_key
from cafe_loyalty_api.db.session import get_session
from cafe_loyalty_api.models.loyalty import (
    LoyaltyCard,
    LoyaltyCardStatus,
    LoyaltyRedemption,
    LoyaltyReward,
    PointsLedgerEntry,
)
from cafe_loyalty_api.services.ledger import (
    AwardLineItem,
    AwardPipeline,
    BalanceSummarizer,
    CardAlreadyExists,
    CardDirectory,
    CardInactive,
    CardNotFound,
    ClientReferenceConflict,
    ConcurrencyConflict,
    ExpirationSweeper,
    InsufficientPoints,
    LedgerError,
    RedemptionEngine,
    RewardCatalog,
    RewardInactive,
    RewardNotFound,
    RewardOutOfStock,
    StorageFailure,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)
from cafe_loyalty_api.services.ledger.pagination import ensure_utc


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


_ERROR_STATUS: dict[type[LedgerError], int] = {
    CardNotFound: status.HTTP_404_NOT_FOUND,
    RewardNotFound: status.HTTP_404_NOT_FOUND,
    CardInactive: status.HTTP_409_CONFLICT,
    CardAlreadyExists: status.HTTP_409_CONFLICT,
    RewardInactive: status.HTTP_409_CONFLICT,
    RewardOutOfStock: status.HTTP_409_CONFLICT,
    InsufficientPoints: status.HTTP_409_CONFLICT,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    ClientReferenceConflict: status.HTTP_409_CONFLICT,
    StorageFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _raise_http(exc: LedgerError) -> NoReturn:
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=status_code, detail=exc.as_detail()) from exc


def _decode_cursor(cursor: str | None) -> tuple[datetime, UUID] | None:
    if not cursor:
        return None
    try:
        return decode_time_uuid_cursor(cursor)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid pagination cursor") from exc


class CardIssueRequest(BaseModel):
    uid: str = Field(..., min_length=1, max_length=64, description="Card uid as read by the scanner")
    holderName: Optional[str] = Field(None, description="Display name printed on the card")


class CardStatusRequest(BaseModel):
    status: Literal["active", "inactive"]


class CardResponse(BaseModel):
    id: UUID
    uid: str
    holderName: Optional[str]
    pointsBalance: int
    status: str
    createdAt: datetime
    updatedAt: datetime


class AwardLineItemRequest(BaseModel):
    pointValue: int = Field(..., ge=0, description="Points earned per unit")
    quantity: int = Field(1, ge=0, description="Units purchased")


class AwardRequest(BaseModel):
    lineItems: List[AwardLineItemRequest] = Field(default_factory=list)
    expirationOffsetDays: Optional[int] = Field(None, ge=0, le=3650, description="Override for the default expiration window")
    reference: Optional[str] = Field(None, max_length=255, description="Purchase or transaction reference")


class LedgerEntryResponse(BaseModel):
    id: UUID
    amount: int
    expiresAt: Optional[datetime]
    deducted: bool
    deductedAt: Optional[datetime]
    deductedAmount: Optional[int]
    reference: Optional[str]
    createdAt: datetime


class AwardResponse(BaseModel):
    entry: Optional[LedgerEntryResponse]
    pointsAwarded: int
    pointsBalance: int


class LedgerWindowResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    nextCursor: Optional[str]


class SweepResponse(BaseModel):
    cardId: UUID
    pointsExpired: int
    pointsBalance: int


class PointsSummaryResponse(BaseModel):
    cardId: UUID
    totalLive: int
    expiredUnswept: int
    expiringSoon: int
    nextExpirationAt: Optional[datetime]
    safeBalance: int
    pointsBalance: int
    lookaheadDays: int
    computedAt: datetime


class ReconciliationResponse(BaseModel):
    cardId: UUID
    cachedBalance: int
    ledgerBalance: int
    expiredUnswept: int
    redeemedPoints: int
    expirationAbsorbed: int
    drift: int
    isConsistent: bool


class RewardCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    pointsRequired: int = Field(..., gt=0)
    quantity: Optional[int] = Field(None, ge=0, description="Stock on hand; 0 or null means unlimited")
    isActive: bool = True


class RewardResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    pointsRequired: int
    quantity: Optional[int]
    stockTracked: bool
    isActive: bool


class RedemptionCreateRequest(BaseModel):
    rewardId: UUID
    clientReference: Optional[str] = Field(
        None,
        max_length=128,
        description="Idempotency key so a retried request does not redeem twice",
    )


class RedemptionResponse(BaseModel):
    id: UUID
    cardId: UUID
    rewardId: UUID
    rewardName: Optional[str]
    pointsUsed: int
    status: str
    read: bool
    clientReference: Optional[str]
    createdAt: datetime


class RedeemResponse(BaseModel):
    redemption: RedemptionResponse
    pointsBalance: int


class RedemptionWindowResponse(BaseModel):
    redemptions: List[RedemptionResponse]
    nextCursor: Optional[str]


class MarkReadRequest(BaseModel):
    redemptionIds: Optional[List[UUID]] = Field(None, description="Defaults to every unread redemption")


class MarkReadResponse(BaseModel):
    updated: int


def _serialize_card(card: LoyaltyCard) -> CardResponse:
    return CardResponse(
        id=card.id,
        uid=card.uid,
        holderName=card.holder_name,
        pointsBalance=int(card.points_balance or 0),
        status=card.status.value,
        createdAt=ensure_utc(card.created_at),
        updatedAt=ensure_utc(card.updated_at),
    )


def _serialize_entry(entry: PointsLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        amount=entry.amount,
        expiresAt=ensure_utc(entry.expires_at),
        deducted=bool(entry.deducted),
        deductedAt=ensure_utc(entry.deducted_at),
        deductedAmount=entry.deducted_amount,
        reference=entry.reference,
        createdAt=ensure_utc(entry.created_at),
    )


def _serialize_reward(reward: LoyaltyReward) -> RewardResponse:
    return RewardResponse(
        id=reward.id,
        name=reward.name,
        description=reward.description,
        pointsRequired=reward.points_required,
        quantity=reward.quantity,
        stockTracked=bool(reward.stock_tracked),
        isActive=bool(reward.is_active),
    )


def _serialize_redemption(redemption: LoyaltyRedemption) -> RedemptionResponse:
    reward_name = None
    if "reward" not in inspect(redemption).unloaded and redemption.reward is not None:
        reward_name = redemption.reward.name
    return RedemptionResponse(
        id=redemption.id,
        cardId=redemption.card_id,
        rewardId=redemption.reward_id,
        rewardName=reward_name,
        pointsUsed=redemption.points_used,
        status=redemption.status.value,
        read=bool(redemption.read),
        clientReference=redemption.client_reference,
        createdAt=ensure_utc(redemption.created_at),
    )


@router.post(
    "/cards",
    response_model=CardResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_staff_api_key)],
)
async def issue_card(request: CardIssueRequest, db: AsyncSession = Depends(get_session)) -> CardResponse:
    """Register a newly handed-out card."""

    try:
        card = await CardDirectory(db).issue_card(request.uid, holder_name=request.holderName)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerError as exc:
        _raise_http(exc)
    return _serialize_card(card)


@router.get("/cards/lookup", response_model=CardResponse)
async def lookup_card(
    uid: str = Query(..., min_length=1, description="Scanned card uid"),
    db: AsyncSession = Depends(get_session),
) -> CardResponse:
    try:
        card = await CardDirectory(db).resolve_uid(uid)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerError as exc:
        _raise_http(exc)
    return _serialize_card(card)


@router.get("/cards/{card_id}", response_model=CardResponse)
async def get_card(card_id: UUID, db: AsyncSession = Depends(get_session)) -> CardResponse:
    try:
        card = await CardDirectory(db).get_card(card_id)
    except LedgerError as exc:
        _raise_http(exc)
    return _serialize_card(card)


@router.post(
    "/cards/{card_id}/status",
    response_model=CardResponse,
    dependencies=[Depends(require_staff_api_key)],
)
async def update_card_status(
    card_id: UUID,
    request: CardStatusRequest,
    db: AsyncSession = Depends(get_session),
) -> CardResponse:
    try:
        card = await CardDirectory(db).set_status(card_id, LoyaltyCardStatus(request.status))
    except LedgerError as exc:
        _raise_http(exc)
    return _serialize_card(card)


@router.post(
    "/cards/{card_id}/awards",
    response_model=AwardResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_staff_api_key)],
)
async def record_award(
    card_id: UUID,
    request: AwardRequest,
    response: Response,
    db: AsyncSession = Depends(get_session),
) -> AwardResponse:
    """Credit points for a completed purchase."""

    line_items = [AwardLineItem(point_value=item.pointValue, quantity=item.quantity) for item in request.lineItems]
    try:
        entry = await AwardPipeline(db).record_award(
            card_id,
            line_items,
            request.expirationOffsetDays,
            reference=request.reference,
        )
        card = await CardDirectory(db).get_card(card_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerError as exc:
        _raise_http(exc)

    if entry is None:
        response.status_code = status.HTTP_200_OK
    return AwardResponse(
        entry=_serialize_entry(entry) if entry else None,
        pointsAwarded=entry.amount if entry else 0,
        pointsBalance=int(card.points_balance or 0),
    )


@router.post(
    "/cards/{card_id}/sweep",
    response_model=SweepResponse,
    dependencies=[Depends(require_staff_api_key)],
)
async def sweep_card(card_id: UUID, db: AsyncSession = Depends(get_session)) -> SweepResponse:
    try:
        expired = await ExpirationSweeper(db).sweep(card_id)
        card = await CardDirectory(db).get_card(card_id)
    except LedgerError as exc:
        _raise_http(exc)
    return SweepResponse(cardId=card_id, pointsExpired=expired, pointsBalance=int(card.points_balance or 0))


@router.get("/cards/{card_id}/summary", response_model=PointsSummaryResponse)
async def get_points_summary(
    card_id: UUID,
    lookahead_days: int | None = Query(None, alias="lookaheadDays", ge=0, le=365),
    refresh: bool = Query(True, description="Sweep expired points before summarising"),
    db: AsyncSession = Depends(get_session),
) -> PointsSummaryResponse:
    """Dashboard figures; expired points are deducted first unless `refresh=false`."""

    try:
        if refresh:
            await ExpirationSweeper(db).sweep(card_id)
        summary = await BalanceSummarizer(db).summarize(card_id, lookahead_days)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerError as exc:
        _raise_http(exc)

    return PointsSummaryResponse(
        cardId=summary.card_id,
        totalLive=summary.total_live,
        expiredUnswept=summary.expired_unswept,
        expiringSoon=summary.expiring_soon,
        nextExpirationAt=summary.next_expiration_at,
        safeBalance=summary.safe_balance,
        pointsBalance=summary.points_balance,
        lookaheadDays=summary.lookahead_days,
        computedAt=summary.computed_at,
    )


@router.get(
    "/cards/{card_id}/reconciliation",
    response_model=ReconciliationResponse,
    dependencies=[Depends(require_staff_api_key)],
)
async def get_reconciliation(card_id: UUID, db: AsyncSession = Depends(get_session)) -> ReconciliationResponse:
    try:
        report = await BalanceSummarizer(db).recompute_balance(card_id)
    except LedgerError as exc:
        _raise_http(exc)
    return ReconciliationResponse(
        cardId=report.card_id,
        cachedBalance=report.cached_balance,
        ledgerBalance=report.ledger_balance,
        expiredUnswept=report.expired_unswept,
        redeemedPoints=report.redeemed_points,
        expirationAbsorbed=report.expiration_absorbed,
        drift=report.drift,
        isConsistent=report.is_consistent,
    )


@router.get("/cards/{card_id}/ledger", response_model=LedgerWindowResponse)
async def list_ledger_entries(
    card_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    decoded_cursor = _decode_cursor(cursor)
    try:
        entries, next_cursor = await CardDirectory(db).list_ledger_entries(card_id, limit=limit, cursor=decoded_cursor)
    except LedgerError as exc:
        _raise_http(exc)
    return LedgerWindowResponse(
        entries=[_serialize_entry(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.post(
    "/cards/{card_id}/redemptions",
    response_model=RedeemResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_reward(
    card_id: UUID,
    request: RedemptionCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> RedeemResponse:
    """Spend points on a reward after sweeping expired points."""

    engine = RedemptionEngine(db)
    try:
        redemption = await engine.redeem(card_id, request.rewardId, client_reference=request.clientReference)
        redemption = await engine.get_redemption(redemption.id) or redemption
        card = await CardDirectory(db).get_card(card_id)
    except LedgerError as exc:
        _raise_http(exc)
    return RedeemResponse(
        redemption=_serialize_redemption(redemption),
        pointsBalance=int(card.points_balance or 0),
    )


@router.get("/cards/{card_id}/redemptions", response_model=RedemptionWindowResponse)
async def list_redemptions(
    card_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    unread_only: bool = Query(False, alias="unreadOnly"),
    db: AsyncSession = Depends(get_session),
) -> RedemptionWindowResponse:
    """Return a card's redemption history with pagination."""

    decoded_cursor = _decode_cursor(cursor)
    try:
        redemptions, next_cursor = await RedemptionEngine(db).list_redemptions(
            card_id,
            limit=limit,
            cursor=decoded_cursor,
            unread_only=unread_only,
        )
    except LedgerError as exc:
        _raise_http(exc)
    return RedemptionWindowResponse(
        redemptions=[_serialize_redemption(redemption) for redemption in redemptions],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.post("/cards/{card_id}/redemptions/read", response_model=MarkReadResponse)
async def mark_redemptions_read(
    card_id: UUID,
    request: MarkReadRequest,
    db: AsyncSession = Depends(get_session),
) -> MarkReadResponse:
    try:
        updated = await RedemptionEngine(db).mark_read(card_id, request.redemptionIds)
    except LedgerError as exc:
        _raise_http(exc)
    return MarkReadResponse(updated=updated)


@router.get("/rewards", response_model=List[RewardResponse])
async def list_rewards(
    max_points: int | None = Query(None, alias="maxPoints", ge=0, description="Only rewards affordable with this many points"),
    db: AsyncSession = Depends(get_session),
) -> List[RewardResponse]:
    rewards = await RewardCatalog(db).list_rewards(active_only=True, max_points=max_points)
    return [_serialize_reward(reward) for reward in rewards]


@router.post(
    "/rewards",
    response_model=RewardResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_staff_api_key)],
)
async def create_reward(request: RewardCreateRequest, db: AsyncSession = Depends(get_session)) -> RewardResponse:
    try:
        reward = await RewardCatalog(db).create_reward(
            name=request.name,
            description=request.description,
            points_required=request.pointsRequired,
            quantity=request.quantity,
            is_active=request.isActive,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerError as exc:
        _raise_http(exc)
    return _serialize_reward(reward)
