"""Tracked-ticker routes.

GET    /api/tickers            - Tracked tickers (the scan universe).
POST   /api/tickers            - Add or reactivate tickers.
DELETE /api/tickers/{symbol}   - Stop tracking a ticker.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from Market_Sweep.data.repository import Repository
from Market_Sweep.models.market_data import TICKER_PATTERN, TrackedTicker, normalize_tickers
from Market_Sweep.web.deps import get_repository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tickers", tags=["tickers"])


class AddTickersRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbols: list[str]


class AddTickersResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    added: int
    rejected: list[str]


@router.get("", response_model=list[TrackedTicker])
async def list_tickers(
    repo: Annotated[Repository, Depends(get_repository)],
    include_inactive: Annotated[bool, Query()] = False,
) -> list[TrackedTicker]:
    return await repo.list_tracked_tickers(include_inactive=include_inactive)


@router.post("", response_model=AddTickersResult, status_code=201)
async def add_tickers(
    body: AddTickersRequest,
    repo: Annotated[Repository, Depends(get_repository)],
) -> AddTickersResult:
    """Add symbols to the universe. Malformed symbols are reported, not stored."""
    valid = normalize_tickers(body.symbols)
    accepted = set(valid)
    rejected = [s for s in body.symbols if s.strip().upper() not in accepted]
    added = await repo.add_tickers(valid) if valid else 0
    logger.info("Added %d tickers (%d rejected)", added, len(rejected))
    return AddTickersResult(added=added, rejected=rejected)


@router.delete("/{symbol}", status_code=204)
async def remove_ticker(
    symbol: str,
    repo: Annotated[Repository, Depends(get_repository)],
) -> None:
    normalized = symbol.strip().upper()
    if not TICKER_PATTERN.match(normalized):
        raise HTTPException(status_code=422, detail=f"Invalid ticker symbol: '{symbol}'")
    if not await repo.deactivate_ticker(normalized):
        raise HTTPException(status_code=404, detail=f"Ticker not tracked: {normalized}")
