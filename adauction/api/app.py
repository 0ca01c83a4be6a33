"""
HTTP API - FastAPI surface over the bid engine and lifecycle controller.

Bid outcomes map to status codes one-to-one (200/400/402/410); lifecycle
errors carry their own status_code. Dollar amounts come in through
headers and go out as decimal strings; atomic units stay inside.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from adauction.api.schemas import (
    BidBody,
    CreativeAuthorizeBody,
    CreativeResultBody,
    RefundRequestBody,
    ReflectionBody,
    SkipBody,
)
from adauction.core.auction.outcomes import (
    Accepted,
    AuctionClosed,
    Outcome,
    PaymentRequired,
    ProposalRejected,
    SettlementFailed,
    VerificationFailed,
)
from adauction.core.auction.record import WinningArtifact
from adauction.core.errors import AuctionError
from adauction.core.payment.types import X402_VERSION, SettleResult, encode_receipt
from adauction.core.pricing import parse_usdc, usdc_amount
from adauction.core.service import AuctionService
from adauction.utils.logger import get_logger
from adauction.utils.validation import (
    MAX_PAYMENT_HEADER_SIZE,
    validate_address,
    validate_agent_id,
    validate_amount,
    validate_optional_text,
    validate_slot_id,
    validate_string,
)

logger = get_logger("api")


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=400)


def _first_error(*checks) -> Optional[str]:
    for is_valid, error in checks:
        if not is_valid:
            return error
    return None


def _render_bids(bids: list) -> list:
    return [{**bid, "amount": usdc_amount(bid["amount"])} for bid in bids]


# =============================================================================
# Outcome Rendering
# =============================================================================


def render_outcome(outcome: Outcome, network: str) -> JSONResponse:
    """Serialize a bid outcome to its HTTP response."""
    if isinstance(outcome, Accepted):
        receipt = SettleResult(
            success=True,
            transaction=outcome.settlement_ref,
            network=network,
            payer=outcome.payer_address,
        )
        return JSONResponse(
            {
                "success": True,
                "message": f"Bid of {usdc_amount(outcome.settled_amount)} USDC accepted",
                "agentId": outcome.agent_id,
                "amount": usdc_amount(outcome.settled_amount),
                "transactionHash": outcome.settlement_ref,
                "payer": outcome.payer_address,
                "timeRemaining": outcome.time_remaining,
                "auctionEndTime": outcome.auction_end_time,
            },
            status_code=outcome.status_code,
            headers={"X-PAYMENT-RESPONSE": encode_receipt(receipt)},
        )

    if isinstance(outcome, ProposalRejected):
        return JSONResponse(
            {
                "error": "Proposal below minimum",
                "yourProposal": usdc_amount(outcome.your_proposal),
                "currentBid": usdc_amount(outcome.current_bid),
                "minimumRequired": usdc_amount(outcome.minimum_required),
                "suggestion": usdc_amount(outcome.suggestion),
            },
            status_code=outcome.status_code,
        )

    if isinstance(outcome, PaymentRequired):
        low, high = outcome.acceptable_range
        return JSONResponse(
            {
                "x402Version": X402_VERSION,
                "accepts": [outcome.requirements.to_wire()],
                "error": "Payment required to place bid",
                "negotiation": {
                    "acceptableRange": {"min": usdc_amount(low), "max": usdc_amount(high)},
                    "currentBid": usdc_amount(outcome.current_bid),
                    "minimumRequired": usdc_amount(outcome.minimum_required),
                    "yourProposal": usdc_amount(outcome.your_proposal),
                    "suggestion": usdc_amount(outcome.suggestion),
                    "timeRemaining": outcome.time_remaining,
                    "bidHistory": _render_bids(outcome.recent_bids),
                },
            },
            status_code=outcome.status_code,
        )

    if isinstance(outcome, VerificationFailed):
        message = f"Payment verification failed: {outcome.reason}"
    elif isinstance(outcome, SettlementFailed):
        message = f"Payment settlement failed: {outcome.reason}"
    elif isinstance(outcome, AuctionClosed):
        return JSONResponse(
            {"error": outcome.reason, "auctionEnded": True},
            status_code=outcome.status_code,
        )
    else:
        raise TypeError(f"Unknown outcome {outcome!r}")

    return JSONResponse({"error": message, "reason": outcome.reason}, status_code=outcome.status_code)


# =============================================================================
# App Factory
# =============================================================================


def create_app(service: AuctionService, run_sweeper: bool = True) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        service: Wired auction service
        run_sweeper: Start the background expiry sweeper with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_sweeper:
            await service.sweeper.start()
        try:
            yield
        finally:
            if run_sweeper:
                await service.sweeper.stop()
            await service.close()

    app = FastAPI(title="adauction", lifespan=lifespan)
    app.state.service = service
    engine = service.engine
    lifecycle = service.lifecycle

    @app.exception_handler(AuctionError)
    async def auction_error_handler(request: Request, exc: AuctionError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        return _bad_request(f"Invalid request: {location} {first.get('msg', '')}".strip())

    # -------------------------------------------------------------------------
    # Bidding
    # -------------------------------------------------------------------------

    @app.post("/bid/{slot_id}")
    async def bid(
        slot_id: str,
        body: Optional[BidBody] = None,
        x_agent_id: Optional[str] = Header(default=None),
        x_proposed_bid: Optional[str] = Header(default=None),
        x_payment: Optional[str] = Header(default=None),
        x_strategy_reasoning: Optional[str] = Header(default=None),
    ):
        body = body or BidBody()
        error = _first_error(
            validate_slot_id(slot_id),
            validate_agent_id(x_agent_id),
            validate_optional_text(body.thinking, "thinking"),
            validate_optional_text(body.strategy, "strategy"),
            validate_optional_text(x_strategy_reasoning, "reasoning"),
        )
        if error:
            return _bad_request(error)

        proposed = None
        if x_proposed_bid:
            try:
                proposed = parse_usdc(x_proposed_bid)
            except ValueError as e:
                return _bad_request(str(e))
            error = _first_error(validate_amount(proposed, "X-Proposed-Bid"))
            if error:
                return _bad_request(error)

        if x_payment is not None and len(x_payment) > MAX_PAYMENT_HEADER_SIZE:
            return render_outcome(VerificationFailed("invalid_payload"), service.config.network)

        outcome = await engine.submit_bid(
            slot_id,
            x_agent_id,
            proposed_amount=proposed,
            payment_proof=x_payment,
            thinking=body.thinking,
            strategy_tag=body.strategy,
            reasoning_text=x_strategy_reasoning,
        )
        return render_outcome(outcome, service.config.network)

    @app.post("/bid/{slot_id}/reflection")
    async def reflection(slot_id: str, body: ReflectionBody):
        error = _first_error(
            validate_slot_id(slot_id),
            validate_agent_id(body.agent_id),
            validate_string(body.reflection, "reflection"),
        )
        if error:
            return _bad_request(error)

        if not await lifecycle.attach_reflection(slot_id, body.agent_id, body.reflection):
            return JSONResponse({"error": f"No bid found for agent {body.agent_id}"}, status_code=404)
        return {"success": True}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @app.post("/refund-request/{slot_id}")
    async def refund_request(slot_id: str, body: RefundRequestBody):
        error = _first_error(
            validate_slot_id(slot_id),
            validate_agent_id(body.agent_id),
            validate_address(body.wallet_address, "walletAddress"),
            validate_optional_text(body.reasoning or None, "reasoning"),
        )
        if error:
            return _bad_request(error)

        result = await lifecycle.request_withdrawal(
            slot_id, body.agent_id, body.wallet_address, body.reasoning
        )
        return {
            "success": True,
            "refunded": usdc_amount(result.refunded_amount),
            "transactionHash": result.settlement_ref,
            "auctionEnded": result.auction_ended,
            "winner": result.winner,
            "message": (
                f"{body.agent_id} withdrew from {slot_id}"
                + (", auction ended" if result.auction_ended else "")
            ),
        }

    @app.post("/skip/{slot_id}")
    async def skip(slot_id: str, body: SkipBody):
        error = _first_error(
            validate_slot_id(slot_id),
            validate_agent_id(body.agent_id),
            validate_optional_text(body.reasoning or None, "reasoning"),
        )
        if error:
            return _bad_request(error)

        result = await lifecycle.record_skip(slot_id, body.agent_id, body.reasoning)
        return {
            "success": True,
            "activeBidders": result.active_bidders,
            "auctionEnded": result.auction_ended,
            "winner": result.winner,
        }

    @app.get("/status")
    async def status(slotId: Optional[str] = None):
        if not slotId:
            return _bad_request("slotId query parameter is required")
        error = _first_error(validate_slot_id(slotId))
        if error:
            return _bad_request(error)

        record = service.store.get_record(slotId)
        if record is None:
            return {"adSpotId": slotId, "currentBid": None, "auctionEnded": False, "bidHistory": []}
        data = record.to_dict(now=service.engine.clock())
        data["currentBid"] = usdc_amount(record.current_bid)
        data["bidHistory"] = _render_bids(data["bidHistory"])
        return data

    # -------------------------------------------------------------------------
    # Creative
    # -------------------------------------------------------------------------

    @app.post("/creative/{slot_id}/authorize")
    async def creative_authorize(slot_id: str, body: CreativeAuthorizeBody):
        error = _first_error(validate_slot_id(slot_id), validate_agent_id(body.agent_id))
        if error:
            return _bad_request(error)

        record = await lifecycle.authorize_creative(slot_id, body.agent_id)
        return {
            "authorized": True,
            "agentId": body.agent_id,
            "winningBid": usdc_amount(record.current_bid),
        }

    @app.post("/creative/{slot_id}/result")
    async def creative_result(slot_id: str, body: CreativeResultBody):
        error = _first_error(
            validate_slot_id(slot_id),
            validate_string(body.url, "url"),
        )
        if error:
            return _bad_request(error)

        artifact = WinningArtifact(
            url=body.url,
            prompt=body.prompt,
            task_ref=body.task_ref,
            generated_at=service.engine.clock(),
        )
        record = await lifecycle.complete_creative(slot_id, artifact)
        return {"success": True, "status": record.status.value, "winnerAdImage": artifact.to_dict()}

    return app
