"""
HTTP and websocket handlers for the download queue service.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from aiohttp import WSMsgType, web

from broadcaster import Event, ProgressBroadcaster, Subscription
from config import API_PREFIX
from errors import InvalidInput, InvalidState, QueueError, error_manager
from managers import QueueManager
from playlist import summarize_items
from recovery import get_queue_summary

logger = logging.getLogger(__name__)

SUBSCRIBE_ACTIONS = {"subscribe", "join"}
UNSUBSCRIBE_ACTIONS = {"unsubscribe", "leave"}


def _reply(message: str, data: Any = None, status: int = 200) -> web.Response:
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return web.json_response(body, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render queue errors as ``{"success": false, "message": ...}`` with a mapped status."""
    try:
        return await handler(request)
    except QueueError as error:
        status = error_manager.http_status(error)
        message = str(error)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, error)
            message = "Server error; the request can be retried"
        body: Dict[str, Any] = {"success": False, "message": message}
        if isinstance(error, InvalidState) and error.conflicting_ids:
            body["activeIds"] = error.conflicting_ids
        return web.json_response(body, status=status)


async def _read_json(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except ValueError as error:
        raise InvalidInput("Request body must be valid JSON") from error
    if not isinstance(payload, dict):
        raise InvalidInput("Request body must be a JSON object")
    return payload


class ApiHandlers:
    """Registers REST routes and the event stream on an aiohttp application."""

    def __init__(self, app: web.Application, manager: QueueManager, broadcaster: ProgressBroadcaster):
        self.app = app
        self.manager = manager
        self.broadcaster = broadcaster
        self._register_handlers()

    def _register_handlers(self) -> None:
        youtube = f"{API_PREFIX}/youtube"
        router = self.app.router
        router.add_get("/", self.handle_health)
        router.add_get("/health", self.handle_health)
        router.add_post(f"{youtube}/download", self.handle_download)
        router.add_post(f"{youtube}/cancel/{{id}}", self.handle_cancel)
        router.add_post(f"{youtube}/pause/{{id}}", self.handle_pause)
        router.add_post(f"{youtube}/resume/{{id}}", self.handle_resume)
        router.add_post(f"{youtube}/pause-all", self.handle_pause_all)
        router.add_post(f"{youtube}/resume-all", self.handle_resume_all)
        router.add_delete(f"{youtube}/delete/{{id}}", self.handle_delete)
        router.add_delete(f"{youtube}/delete-batch", self.handle_delete_batch)
        router.add_get(f"{youtube}/queue", self.handle_queue)
        router.add_get(f"{youtube}/status/{{id}}", self.handle_status)
        router.add_get(f"{API_PREFIX}/queue/status", self.handle_queue_summary)
        router.add_get(f"{API_PREFIX}/socket", self.handle_socket)

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "activeDownloads": self.manager.active_count,
                "subscribers": self.broadcaster.subscriber_count,
            }
        )

    async def handle_download(self, request: web.Request) -> web.Response:
        payload = await _read_json(request)
        if not payload.get("url"):
            raise InvalidInput("URL was not provided")

        job = await self.manager.add_to_queue(payload["url"], payload.get("type"), payload.get("options"))
        job, items = await self.manager.get_download_status(job.id)
        data = {
            "id": job.id,
            "status": job.status.value,
            "type": job.type.value,
            "isPlaylist": job.type.is_playlist,
            "title": job.title,
            "items": [item.to_dict() for item in items],
        }
        message = "Playlist download was queued" if job.type.is_playlist else "Download was queued"
        return _reply(message, data, status=201)

    async def handle_cancel(self, request: web.Request) -> web.Response:
        job_id = request.match_info["id"]
        job = await self.manager.cancel_download(job_id)
        if job is None:
            return _reply("Download was already removed", {"id": job_id})
        return _reply(f"Download is {job.status.value}", job.to_dict())

    async def handle_pause(self, request: web.Request) -> web.Response:
        job_id = request.match_info["id"]
        paused = await self.manager.pause_download(job_id)
        message = "Download paused" if paused else "Nothing to pause"
        return _reply(message, {"id": job_id, "paused": paused})

    async def handle_resume(self, request: web.Request) -> web.Response:
        job_id = request.match_info["id"]
        job = await self.manager.resume_download(job_id)
        if job is None:
            return _reply("Download was already removed", {"id": job_id})
        return _reply(f"Download is {job.status.value}", job.to_dict())

    async def handle_pause_all(self, request: web.Request) -> web.Response:
        count = await self.manager.pause_all_downloads()
        return _reply(f"{count} download(s) paused", {"count": count})

    async def handle_resume_all(self, request: web.Request) -> web.Response:
        count = await self.manager.resume_all_downloads()
        return _reply(f"{count} download(s) resumed", {"count": count})

    async def handle_delete(self, request: web.Request) -> web.Response:
        job_id = request.match_info["id"]
        deleted = await self.manager.delete_download(job_id)
        message = "Download deleted" if deleted else "Download was already removed"
        return _reply(message, {"id": job_id, "deleted": deleted})

    async def handle_delete_batch(self, request: web.Request) -> web.Response:
        payload = await _read_json(request)
        ids = payload.get("ids")
        deleted = await self.manager.delete_downloads(ids)
        return _reply(f"{deleted} download(s) deleted", {"deletedCount": deleted, "requestedIds": ids})

    async def handle_queue(self, request: web.Request) -> web.Response:
        listing = await self.manager.get_queue_listing()
        data = {key: [job.to_dict() for job in jobs] for key, jobs in listing.items()}
        return _reply("Queue listing", data)

    async def handle_status(self, request: web.Request) -> web.Response:
        job, items = await self.manager.get_download_status(request.match_info["id"])
        data = job.to_dict()
        if job.type.is_playlist:
            data["items"] = [item.to_dict() for item in items]
            summary = summarize_items(items)
            summary.pop("files")
            data["summary"] = summary
        return _reply(f"Download is {job.status.value}", data)

    async def handle_queue_summary(self, request: web.Request) -> web.Response:
        summary = await get_queue_summary(self.manager.store)
        return _reply("Queue summary", summary)

    async def handle_socket(self, request: web.Request) -> web.WebSocketResponse:
        """Forward job events to the client; it picks channels with subscribe/unsubscribe messages."""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        channels = [value for value in request.query.getall("id", []) if value]
        subscription = self.broadcaster.subscribe(*channels)
        sender = asyncio.create_task(self._forward_events(ws, subscription))
        try:
            async for message in ws:
                if message.type == WSMsgType.TEXT:
                    self._apply_socket_command(subscription, message.data)
                elif message.type == WSMsgType.ERROR:
                    logger.warning("Websocket closed with error: %s", ws.exception())
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            self.broadcaster.unsubscribe(subscription)
        return ws

    @staticmethod
    async def _forward_events(ws: web.WebSocketResponse, subscription: Subscription) -> None:
        while not ws.closed:
            event = await subscription.get()
            await ws.send_json(event.to_dict())

    @staticmethod
    def _apply_socket_command(subscription: Subscription, raw: str) -> None:
        try:
            command = json.loads(raw)
        except ValueError:
            command = None
        if not isinstance(command, dict):
            subscription.deliver(Event("error", {"message": "Messages must be JSON objects"}))
            return

        action = command.get("action")
        channel: Optional[str] = command.get("id")
        if not isinstance(channel, str) or not channel:
            subscription.deliver(Event("error", {"message": "id is required"}))
            return

        if action in SUBSCRIBE_ACTIONS:
            subscription.channels.add(channel)
            subscription.deliver(Event("subscribed", {"id": channel}))
        elif action in UNSUBSCRIBE_ACTIONS:
            subscription.channels.discard(channel)
            subscription.deliver(Event("unsubscribed", {"id": channel}))
        else:
            subscription.deliver(Event("error", {"message": f"Unknown action: {action}"}))


def create_app(manager: QueueManager, broadcaster: ProgressBroadcaster) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    ApiHandlers(app, manager, broadcaster)
    return app
