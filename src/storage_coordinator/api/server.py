"""HTTP API - marketplace queries, uploads, transfer status and the provider socket."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from storage_coordinator.errors import (
    AgreementNotFound,
    FragmentDispatchError,
    InvalidAgreementId,
    NoProviderAvailable,
    TransferNotFound,
)
from storage_coordinator.market.queries import MarketplaceQueryService
from storage_coordinator.models.records import AgreementRecord
from storage_coordinator.providers.hub import ProviderHub
from storage_coordinator.providers.registry import ProviderRegistry
from storage_coordinator.transfers.dispatcher import FragmentDispatcher

log = logging.getLogger(__name__)

# Room for the multipart framing and the text fields around the file.
FORM_OVERHEAD_BYTES = 64 * 1024


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except InvalidAgreementId as exc:
        return _error(400, str(exc))
    except (AgreementNotFound, TransferNotFound) as exc:
        return _error(404, str(exc))
    except NoProviderAvailable as exc:
        log.warning("Upload rejected: %s", exc)
        return _error(500, "No available providers")
    except FragmentDispatchError as exc:
        return _error(503, f"Provider unavailable: {exc}")
    except Exception as exc:
        log.error("Unhandled error on %s %s: %s", request.method, request.path, exc, exc_info=True)
        return _error(500, "Internal server error")


class CoordinatorApi:
    """Request handlers. Each one delegates to a core component."""

    def __init__(
        self,
        queries: MarketplaceQueryService,
        dispatcher: FragmentDispatcher,
        registry: ProviderRegistry,
    ) -> None:
        self._queries = queries
        self._dispatcher = dispatcher
        self._registry = registry

    # ── Offerings ──────────────────────────────────────────

    async def offerings(self, request: web.Request) -> web.Response:
        offerings = await self._queries.list_active_offerings()
        return web.json_response([o.to_json() for o in offerings])

    async def offerings_by_provider(self, request: web.Request) -> web.Response:
        offerings = await self._queries.offerings_by_provider(request.match_info["account"])
        return web.json_response([o.to_json() for o in offerings])

    # ── Agreements ─────────────────────────────────────────

    async def agreements(self, request: web.Request) -> web.Response:
        agreements = await self._queries.list_agreements()
        return web.json_response([a.to_json() for a in agreements])

    async def agreements_by_consumer(self, request: web.Request) -> web.Response:
        agreements = await self._queries.agreements_by_consumer(request.match_info["consumer"])
        return web.json_response([a.to_json() for a in agreements])

    async def agreements_by_provider(self, request: web.Request) -> web.Response:
        agreements = await self._queries.agreements_by_provider(request.match_info["provider"])
        return web.json_response([a.to_json() for a in agreements])

    async def agreement(self, request: web.Request) -> web.Response:
        agreement = await self._queries.agreement_by_id(request.match_info["id"])
        return web.json_response(agreement.to_json())

    async def agreement_payments(self, request: web.Request) -> web.Response:
        payments = await self._queries.payments_for_agreement(request.match_info["id"])
        return web.json_response([p.to_json() for p in payments])

    # ── Uploads / transfers ────────────────────────────────

    async def upload(self, request: web.Request) -> web.Response:
        form = await request.post()
        field = form.get("file")
        if not isinstance(field, web.FileField):
            return _error(400, "No file uploaded")

        wallet = str(form.get("walletAddress") or "").strip()
        agreement = await self._resolve_agreement(str(form.get("agreementId") or "").strip(), wallet)

        content = await asyncio.to_thread(field.file.read)
        file_name = field.filename or "upload"
        log.info(
            "Upload of %s (%d bytes) from %s, agreement %s",
            file_name, len(content), wallet or "(anonymous)",
            agreement.agreement_id if agreement else None,
        )
        result = await self._dispatcher.dispatch(
            content,
            file_name,
            agreement.agreement_id if agreement else None,
            preferred_provider=agreement.provider if agreement else None,
        )
        return web.json_response(
            {
                "message": "File sent to provider for storage",
                "fileId": result.file_id,
                "providerAddress": result.provider_address,
                "agreementId": result.agreement_id,
                "status": result.status.value,
            },
            status=202,
        )

    async def _resolve_agreement(self, raw_id: str, wallet: str) -> AgreementRecord | None:
        """Explicit id must exist; otherwise the wallet's latest active agreement."""
        if raw_id:
            agreement = await self._queries.agreement_by_id(raw_id)
            if not agreement.is_active:
                log.warning("Upload against inactive agreement %d", agreement.agreement_id)
            return agreement
        if wallet:
            return await self._queries.active_agreement_for_consumer(wallet)
        return None

    async def transfer(self, request: web.Request) -> web.Response:
        file_id = request.match_info["file_id"]
        transfer = await self._dispatcher.get_status(file_id)
        if transfer is None:
            raise TransferNotFound(f"no transfer with file id {file_id}")
        return web.json_response(transfer.to_json())

    # ── Providers ──────────────────────────────────────────

    async def providers(self, request: web.Request) -> web.Response:
        return web.json_response([c.to_json() for c in self._registry.connections()])


def build_app(
    queries: MarketplaceQueryService,
    dispatcher: FragmentDispatcher,
    registry: ProviderRegistry,
    hub: ProviderHub,
    max_upload_bytes: int = 100 * 1024 * 1024,
) -> web.Application:
    api = CoordinatorApi(queries, dispatcher, registry)
    app = web.Application(
        client_max_size=max_upload_bytes + FORM_OVERHEAD_BYTES,
        middlewares=[error_middleware],
    )
    app.add_routes([
        web.get("/offerings", api.offerings),
        web.get("/offerings/provider/{account}", api.offerings_by_provider),
        web.get("/agreements", api.agreements),
        web.get("/agreements/consumer/{consumer}", api.agreements_by_consumer),
        web.get("/agreements/provider/{provider}", api.agreements_by_provider),
        web.get("/agreements/{id}", api.agreement),
        web.get("/agreements/{id}/payments", api.agreement_payments),
        web.post("/upload", api.upload),
        web.get("/transfers/{file_id}", api.transfer),
        web.get("/providers", api.providers),
        web.get("/providers/ws", hub.handle),
    ])
    return app
