from __future__ import annotations

import asyncio
import json
import logging
import subprocess
import wave

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from common.config import GatewaySettings
from common.errors import RecognitionError
from common.schemas import (
    ClientMessageType,
    ErrorMessage,
    OutcomeMessage,
    ProgressMessage,
    SessionStartedMessage,
    StartMessage,
)
from gateway.session import SessionManager

logger = logging.getLogger(__name__)

settings = GatewaySettings()
app = FastAPI(title="AyahFind Gateway")
manager = SessionManager(max_sessions=settings.max_sessions)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "active_sessions": manager.active_count,
        "known_repeated_locations": len(manager.knowledge),
    }


@app.websocket("/recognize")
async def recognize_endpoint(ws: WebSocket):
    await ws.accept()
    session_id: str | None = None
    created = False
    try:
        # Expect a start message first (text frame)
        raw = await ws.receive_text()
        msg = json.loads(raw)
        if msg.get("type") != ClientMessageType.start:
            await ws.send_text(ErrorMessage(session_id="", detail="Expected start message").model_dump_json())
            await ws.close()
            return

        start = StartMessage(**msg)
        session_id = start.session_id
        session = await manager.create(
            session_id=session_id,
            client_ws=ws,
            format=start.format,
            sample_rate=start.sample_rate,
        )
        created = True

        outbox: asyncio.Queue[BaseModel] = asyncio.Queue()
        session.scheduler.start_session(
            on_outcome=lambda outcome: outbox.put_nowait(OutcomeMessage(session_id=session_id, outcome=outcome)),
            on_progress=lambda partial: outbox.put_nowait(ProgressMessage(session_id=session_id, partial=partial)),
            session_id=session_id,
        )
        await ws.send_text(SessionStartedMessage(session_id=session_id).model_dump_json())
        sender = asyncio.create_task(_send_to_client(outbox, ws, session_id))

        # Main loop: receive segments/stop from client
        try:
            while True:
                message = await ws.receive()
                if message.get("type") == "websocket.disconnect":
                    break

                if message.get("text") is not None:
                    data = json.loads(message["text"])
                    if data.get("type") == ClientMessageType.stop:
                        await session.finish()
                        # The outcome is queued by now; let the sender flush it
                        await sender
                        break
                elif message.get("bytes") is not None:
                    try:
                        session.accept(message["bytes"])
                    except (wave.Error, EOFError, subprocess.CalledProcessError) as exc:
                        logger.warning("Undecodable segment in %s: %s", session_id, exc)
                        await ws.send_text(
                            ErrorMessage(session_id=session_id, code="invalid_audio", detail=str(exc)).model_dump_json()
                        )
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", session_id)
    except (ValidationError, json.JSONDecodeError) as exc:
        logger.warning("Bad client message: %s", exc)
        await ws.send_text(ErrorMessage(session_id=session_id or "", code="bad_request", detail=str(exc)).model_dump_json())
    except RecognitionError as exc:
        logger.warning("Recognition error: %s", exc)
        await ws.send_text(ErrorMessage(session_id=session_id or "", code=exc.code, detail=str(exc)).model_dump_json())
    except RuntimeError as exc:
        logger.warning("Session error: %s", exc)
        await ws.send_text(ErrorMessage(session_id=session_id or "", detail=str(exc)).model_dump_json())
    except Exception:
        logger.exception("Unexpected error in recognize endpoint")
    finally:
        if created:
            await manager.remove(session_id)


async def _send_to_client(outbox: asyncio.Queue, ws: WebSocket, session_id: str):
    """Forward progress and the single outcome to the client; stop after the outcome."""
    while True:
        message = await outbox.get()
        await ws.send_text(message.model_dump_json())
        if isinstance(message, OutcomeMessage):
            logger.info("Outcome sent for %s: %s", session_id, message.outcome.kind)
            return


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=settings.host, port=settings.port)
