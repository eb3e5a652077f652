"""
Live Caption Relay Server

Single server that:
1. Receives the speaker's browser audio over WebSocket
2. Transcribes it via Deepgram
3. Translates each finalized segment for every listener via OpenAI
4. Synthesizes speech on request (Deepgram / OpenAI / ElevenLabs)
5. Pushes captions and audio to each listener's WebSocket

Wire format on /ws: JSON text frames ``{"event": ..., "data": ...}`` in both
directions. Binary frames from a client are ``audio``; binary frames from the
server are ``tts_audio_chunk``.
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from config_manager import ConfigError, ConfigManager, get_config_manager
from languages import LanguageCatalog, rank_voices
from providers import ProviderError, Providers, build_providers
from relay import RelayHub

logger = logging.getLogger(__name__)


# ============== Connections ==============

class WebSocketConnection:
    """Transport handle for one browser tab."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex[:12]
        self.websocket = websocket
        self.connected = True
        # Fan-out, queues and the receive loop all send on the same socket
        self._send_lock = asyncio.Lock()

    async def emit(self, event: str, data: Any = None) -> bool:
        return await self._send(self.websocket.send_json, {"event": event, "data": data})

    async def send_audio(self, audio: bytes) -> bool:
        return await self._send(self.websocket.send_bytes, audio)

    async def _send(self, send, payload) -> bool:
        if not self.connected:
            return False
        async with self._send_lock:
            try:
                await send(payload)
                return True
            except Exception as e:
                logger.debug("Send to %s failed, marking disconnected: %s", self.id, e)
                self.connected = False
                return False


# ============== App Factory ==============

def create_app(
    config: Optional[ConfigManager] = None,
    providers: Optional[Providers] = None,
    catalog: Optional[LanguageCatalog] = None,
) -> FastAPI:
    """Build the relay app.

    Without injected providers the SDK-backed ones are built from ``config``,
    and a configuration that can't run them raises ConfigError here.
    """
    config = config or get_config_manager()
    catalog = catalog or LanguageCatalog(
        admin_file=config.get("preferences", "admin_languages_file"),
        listener_file=config.get("preferences", "languages_file"),
    )
    if providers is None:
        config.validate()
        providers = build_providers(config, catalog)

    hub = RelayHub(
        providers.recognizer,
        providers.translator,
        providers.synthesizer,
        queue_mode=config.queue_mode,
        default_voice=config.get("synthesis", "default_voice_model") or None,
        default_listener_language=config.get("preferences", "default_listener_language", "en-US"),
        ordered_delivery=bool(config.get("translation", "ordered_delivery", True)),
        surface_interim=bool(config.get("recognition", "interim_results", False)),
    )

    app = FastAPI(title="Live Caption Relay")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.hub = hub
    app.state.catalog = catalog
    app.state.synthesizer = providers.synthesizer

    # ============== HTTP Routes ==============

    @app.get("/health")
    async def health_check():
        return hub.health()

    @app.get("/api/languages")
    async def get_languages(is_admin: bool = Query(False, alias="isAdmin")):
        """Get the languages a speaker (isAdmin=true) or listener can choose"""
        return [lang.to_dict() for lang in catalog.languages(is_admin)]

    @app.get("/api/voiceModelList")
    async def get_voice_model_list(language: str = Query(...)):
        """Get synthesizer voices for a language, best match first"""
        try:
            voices = await providers.synthesizer.list_voices()
        except ProviderError as e:
            logger.error("Voice catalog lookup failed: %s", e)
            raise HTTPException(status_code=502, detail=str(e))
        return [voice.to_dict() for voice in rank_voices(voices, language)]

    # ============== WebSocket Route ==============

    @app.websocket("/ws")
    async def relay_websocket(websocket: WebSocket):
        """WebSocket endpoint shared by the admin and all listeners"""
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        logger.info("Connection opened: %s", connection.id)

        async def dispatch(event: str, data: Any) -> None:
            # One bad event must not end the session for everyone else
            try:
                await hub.handle_event(connection, event, data)
            except Exception as e:
                logger.exception("Event %r from %s failed", event, connection.id)
                await connection.emit("error", {"event": event, "message": str(e)})

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break

                if message.get("bytes") is not None:
                    await dispatch("audio", message["bytes"])
                    continue

                text = message.get("text")
                if not text:
                    continue
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("Malformed frame from %s ignored", connection.id)
                    continue
                if not isinstance(payload, dict) or not payload.get("event"):
                    continue

                await dispatch(str(payload["event"]), payload.get("data"))

        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.exception("Connection %s error", connection.id)
            await connection.emit("error", {"message": str(e)})
        finally:
            connection.connected = False
            await hub.disconnect(connection)
            logger.info("Connection closed: %s", connection.id)

    # ============== Startup / Shutdown ==============

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "Relay ready (tts=%s, queue=%s, %d listener languages)",
            config.tts_service, config.queue_mode, len(catalog.listener),
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        await hub.aclose()

    return app


# ============== Main ==============

def main(argv=None) -> int:
    config = get_config_manager()

    parser = argparse.ArgumentParser(description="Live Caption Relay Server")
    parser.add_argument("--host", default=config.get("server", "host"), help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.get("server", "port"), help="Port to bind to")
    parser.add_argument("--log-level", default=config.get("server", "log_level"), help="Logging level")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )
    # Reduce noisy upstream logs
    for _name in ("deepgram", "httpx", "openai", "websockets"):
        logging.getLogger(_name).setLevel(logging.WARNING)

    try:
        app = create_app(config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 1

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        ws_ping_interval=30,
        ws_ping_timeout=60,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
