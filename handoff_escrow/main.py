# handoff_escrow/main.py
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import List

from fastapi import FastAPI, Header, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import LOG_LEVEL, is_development
from .database import Base, engine as db_engine
from .engine import PresentedSecret
from .errors import EscrowError
from .schemas import (
    ConfirmCodeIn,
    ConfirmOut,
    ConfirmQrIn,
    HandoffOut,
    LocationIn,
    LocationOut,
    OpenTransactionIn,
    OpenTransactionOut,
    PayeeAccountIn,
    PayeeAccountOut,
    PaymentHandleOut,
    TransactionOut,
)
from .services import Services, build_services

logger = logging.getLogger(__name__)


def create_app(services: Services = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        current = services
        if current is None:
            logging.basicConfig(
                level=LOG_LEVEL,
                format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            )
            # create tables (simple approach)
            Base.metadata.create_all(bind=db_engine)
            current = build_services()
        current.start()
        app.state.services = current
        try:
            yield
        finally:
            current.stop()

    app = FastAPI(title="Handoff Escrow", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": {"kind": "validation_error", "message": f"Invalid or missing fields: {fields}"}},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        message = str(exc) if is_development() else "Internal server error"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"kind": "internal_error", "message": message}},
        )

    def svc(request: Request) -> Services:
        return request.app.state.services

    @app.get("/")
    def health():
        return {"status": "HEALTHY", "current_time": datetime.now(timezone.utc).isoformat()}

    @app.post("/v1/payee-accounts", response_model=PayeeAccountOut, status_code=status.HTTP_201_CREATED)
    def register_payee_account(payload: PayeeAccountIn, request: Request, x_actor_id: str = Header(...)):
        account = svc(request).accounts.register(x_actor_id, payload.email)
        return PayeeAccountOut(account_ref=account.account_ref, onboarding_url=account.onboarding_url)

    @app.post("/v1/transactions", response_model=OpenTransactionOut, status_code=status.HTTP_201_CREATED)
    def open_transaction(payload: OpenTransactionIn, request: Request, x_actor_id: str = Header(...)):
        opened = svc(request).engine.open_transaction(
            buyer_id=x_actor_id,
            seller_id=payload.seller_id,
            amount=payload.amount,
            currency=payload.currency,
            meeting_point=(payload.meeting_lat, payload.meeting_lng),
        )
        return OpenTransactionOut(
            transaction=TransactionOut.model_validate(opened.transaction),
            handoff=HandoffOut.model_validate(opened.handoff),
            payment_intent=PaymentHandleOut(
                id=opened.transaction.gateway_intent_id, client_secret=opened.client_secret
            ),
        )

    @app.get("/v1/transactions", response_model=List[TransactionOut])
    def list_transactions(request: Request, x_actor_id: str = Header(...)):
        return [TransactionOut.model_validate(tx) for tx in svc(request).engine.list_transactions(x_actor_id)]

    @app.get("/v1/transactions/{transaction_id}", response_model=TransactionOut)
    def get_transaction(transaction_id: str, request: Request, x_actor_id: str = Header(...)):
        return TransactionOut.model_validate(svc(request).engine.get_transaction(transaction_id, x_actor_id))

    @app.post("/v1/transactions/{transaction_id}/cancel", response_model=TransactionOut)
    def cancel_transaction(transaction_id: str, request: Request, x_actor_id: str = Header(...)):
        return TransactionOut.model_validate(svc(request).engine.cancel(transaction_id, x_actor_id))

    @app.get("/v1/handoffs/{handoff_id}", response_model=HandoffOut)
    def get_handoff(handoff_id: str, request: Request, x_actor_id: str = Header(...)):
        return HandoffOut.model_validate(svc(request).engine.get_handoff(handoff_id, x_actor_id))

    def _confirm(request, handoff_id, actor_id, presented):
        result = svc(request).engine.confirm(handoff_id, actor_id, presented)
        if result.released:
            message = "Payment has been released from escrow"
        elif result.transaction.role_of(actor_id) == "buyer":
            message = "Buyer confirmed. Waiting for seller confirmation."
        else:
            message = "Seller confirmed. Waiting for buyer confirmation."
        return ConfirmOut(
            handoff=HandoffOut.model_validate(result.handoff),
            transaction_status=result.transaction.status.value,
            payment_released=result.released,
            message=message,
        )

    @app.post("/v1/handoffs/{handoff_id}/confirm", response_model=ConfirmOut)
    def confirm_by_code(handoff_id: str, payload: ConfirmCodeIn, request: Request, x_actor_id: str = Header(...)):
        return _confirm(request, handoff_id, x_actor_id, PresentedSecret.from_code(payload.confirmation_code))

    @app.post("/v1/handoffs/{handoff_id}/confirm-qr", response_model=ConfirmOut)
    def confirm_by_qr(handoff_id: str, payload: ConfirmQrIn, request: Request, x_actor_id: str = Header(...)):
        return _confirm(request, handoff_id, x_actor_id, PresentedSecret.from_qr(payload.qr_code_data))

    @app.post("/v1/handoffs/{handoff_id}/location", response_model=LocationOut)
    def publish_location(handoff_id: str, payload: LocationIn, request: Request, x_actor_id: str = Header(...)):
        delivered = svc(request).relay.publish_location(handoff_id, x_actor_id, payload.lat, payload.lng)
        return LocationOut(delivered=delivered)

    @app.websocket("/v1/handoffs/{handoff_id}/location/ws")
    async def location_socket(websocket: WebSocket, handoff_id: str, actor_id: str):
        relay = websocket.app.state.services.relay
        await websocket.accept()
        outbox: asyncio.Queue = asyncio.Queue()
        loop = asyncio.get_running_loop()

        def sink(message):
            loop.call_soon_threadsafe(outbox.put_nowait, message)

        try:
            role = await asyncio.to_thread(relay.join, handoff_id, actor_id, sink)
        except EscrowError as e:
            await websocket.send_json({"type": "error", **e.to_dict()})
            await websocket.close(code=4403 if e.status_code == 403 else 4404)
            return

        await websocket.send_json({"type": "joined-handoff", "handoffId": handoff_id, "role": role})

        async def pump():
            while True:
                await websocket.send_json(await outbox.get())

        sender = asyncio.create_task(pump())
        try:
            while True:
                data = await websocket.receive_json()
                if not isinstance(data, dict):
                    await websocket.send_json(
                        {"type": "error", "kind": "validation_error", "message": "Expected a JSON object"}
                    )
                    continue
                try:
                    await asyncio.to_thread(
                        relay.publish_location, handoff_id, actor_id, data.get("lat"), data.get("lng")
                    )
                except EscrowError as e:
                    await websocket.send_json({"type": "error", **e.to_dict()})
        except WebSocketDisconnect:
            pass
        finally:
            relay.leave(handoff_id, actor_id, sink)
            sender.cancel()
            with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await sender

    @app.post("/v1/webhooks/gateway")
    async def gateway_webhook(request: Request):
        payload = await request.body()
        signature = request.headers.get("Stripe-Signature")
        outcome = await asyncio.to_thread(svc(request).reconciler.handle, payload, signature)
        return {"received": True, "outcome": outcome}

    return app


app = create_app()
