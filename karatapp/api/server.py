"""HTTP API and realtime WebSocket endpoint.

Exposes the services over JSON:
- bearer-token authentication (``Authorization: Bearer <access token>``)
- auth, profile and avatar, forum, likes and favorites, katas and ohyos,
  mutes and roles
- downloads of stored objects through public or signed URLs
- ``/ws`` where content events are broadcast (used by ``WebSocketPublisher``)

Service errors are answered with ``{"ok": false, "error": message}`` and the
status code the error carries.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import BodyPartReader, web

from ..core.errors import InvalidInputError, KaratappError, NotAuthenticatedError, NotFoundError, PermissionDeniedError
from ..core.storage import URL_PREFIX
from ..models.avatars import PRESET_AVATARS
from ..models.enums import ContentKind, ForumCategory, MuteDuration, OhyoCategory, TargetType, UserRole
from ..models.schemas import UploadFile
from ..services.auth import AuthService
from ..services.avatars import AvatarService
from ..services.content import ContentService
from ..services.forum import ForumService
from ..services.interactions import InteractionService
from ..services.mutes import MuteService
from ..services.roles import RoleService
from ..utils.comments import organize_comments
from ..utils.messages import friendly_message
from ..utils.serialization import to_jsonable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..core.container import Container
    from ..models.schemas import AuthUser

    type Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

log = logging.getLogger("api")


def _dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def _json(data: Any, status: int = 200) -> web.Response:
    return web.json_response(to_jsonable(data), status=status, dumps=_dumps)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"ok": False, "error": message}, status=status, dumps=_dumps)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except KaratappError as e:
        return _error(e.message, e.status_code)
    except ValueError as e:
        return _error(f"Invalid request: {e}", 400)
    except Exception as e:
        log.exception("Unhandled error on %s %s: %s", request.method, request.path, e)
        return _error(friendly_message(e), 500)


def _int_param(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidInputError(f"Query parameter {name} must be an integer") from None


def _path_int(request: web.Request, name: str) -> int:
    try:
        return int(request.match_info[name])
    except ValueError:
        raise NotFoundError("Not found") from None


async def _body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    data = await request.json(loads=orjson.loads)
    if not isinstance(data, dict):
        raise InvalidInputError("Request body must be a JSON object")
    return data


async def _form(request: web.Request) -> tuple[dict[str, Any], dict[str, list[UploadFile]]]:
    """Read a request that is either JSON or multipart with file fields."""
    if not request.content_type.startswith("multipart/"):
        return await _body(request), {}

    fields: dict[str, Any] = {}
    files: dict[str, list[UploadFile]] = {}
    reader = await request.multipart()
    while (part := await reader.next()) is not None:
        if not isinstance(part, BodyPartReader) or part.name is None:
            continue
        if part.filename:
            data = await part.read(decode=False)
            files.setdefault(part.name, []).append(
                UploadFile(name=part.filename, data=bytes(data), content_type=part.headers.get("Content-Type"))
            )
        else:
            fields[part.name] = await part.text()
    return fields, files


def _text(data: dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key, default)
    return value if isinstance(value, str) else str(value)


def _video_urls(data: dict[str, Any]) -> list[str] | None:
    value = data.get("video_urls")
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = orjson.loads(value)
    if not isinstance(value, list):
        raise InvalidInputError("video_urls must be a list")
    return [str(url) for url in value]


class ApiServer:
    """aiohttp application hosting the API and the WebSocket broadcast."""

    def __init__(self, container: Container) -> None:
        self.container = container
        server = container.config.server
        self._host = server.host
        self._port = server.port
        self._ws_path = server.ws_path
        self._ws_requires_auth = server.ws_requires_auth
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._server_lock = asyncio.Lock()
        self._started = False
        self._conns: set[web.WebSocketResponse] = set()
        self._bound_port: int | None = None

        self.auth: AuthService | None = None
        self.avatars: AvatarService | None = None
        self.forum: ForumService | None = None
        self.interactions: InteractionService | None = None
        self.mutes: MuteService | None = None
        self.roles: RoleService | None = None

    # ---------------------------------------------------------------- app

    def _build_services(self) -> None:
        self.auth = AuthService(self.container)
        self.avatars = AvatarService(self.container)
        self.forum = ForumService(self.container)
        self.interactions = InteractionService(self.container)
        self.mutes = MuteService(self.container)
        self.roles = RoleService(self.container)

    def build_app(self) -> web.Application:
        """Create the aiohttp application with all routes."""
        if self.auth is None:
            self._build_services()
        app = web.Application(middlewares=[error_middleware], client_max_size=64 * 1024 * 1024)
        app.add_routes(
            [
                web.get(self._ws_path, self._ws_handler),
                web.get("/health", self.health),
                # auth and profile
                web.post("/api/auth/sign-up", self.sign_up),
                web.post("/api/auth/sign-in", self.sign_in),
                web.post("/api/auth/sign-out", self.sign_out),
                web.post("/api/auth/refresh", self.refresh),
                web.get("/api/me", self.me),
                web.patch("/api/me", self.update_me),
                web.get("/api/avatars", self.list_avatars),
                web.get("/api/me/avatar", self.get_avatar),
                web.put("/api/me/avatar", self.select_avatar),
                web.post("/api/me/avatar", self.upload_avatar),
                web.delete("/api/me/avatar", self.delete_avatar),
                # forum
                web.get("/api/forum/posts", self.list_posts),
                web.post("/api/forum/posts", self.create_post),
                web.get("/api/forum/posts/{post_id}", self.get_post),
                web.patch("/api/forum/posts/{post_id}", self.update_post),
                web.delete("/api/forum/posts/{post_id}", self.delete_post),
                web.post("/api/forum/posts/{post_id}/pin", self.toggle_pin),
                web.post("/api/forum/posts/{post_id}/lock", self.toggle_lock),
                web.get("/api/forum/posts/{post_id}/comments", self.list_post_comments),
                web.post("/api/forum/posts/{post_id}/comments", self.add_post_comment),
                web.patch("/api/forum/comments/{comment_id}", self.update_post_comment),
                web.delete("/api/forum/comments/{comment_id}", self.delete_post_comment),
                # likes and favorites
                web.get("/api/likes/{target_type}/{target_id}", self.list_likes),
                web.post("/api/likes/{target_type}/{target_id}", self.toggle_like),
                web.get("/api/favorites/{target_type}", self.list_favorite_ids),
                web.post("/api/favorites/{target_type}/{target_id}", self.toggle_favorite),
                # katas and ohyos
                web.get("/api/{kind:kata|ohyo}s", self.list_items),
                web.post("/api/{kind:kata|ohyo}s", self.add_item),
                web.post("/api/{kind:kata|ohyo}s/reorder", self.reorder_items),
                web.get("/api/{kind:kata|ohyo}s/{item_id:\\d+}", self.get_item),
                web.patch("/api/{kind:kata|ohyo}s/{item_id:\\d+}", self.update_item),
                web.delete("/api/{kind:kata|ohyo}s/{item_id:\\d+}", self.delete_item),
                web.put("/api/{kind:kata|ohyo}s/{item_id:\\d+}/images", self.update_item_images),
                web.post("/api/{kind:kata|ohyo}s/{item_id:\\d+}/images", self.upload_item_images),
                web.get("/api/{kind:kata|ohyo}s/{item_id:\\d+}/comments", self.list_item_comments),
                web.post("/api/{kind:kata|ohyo}s/{item_id:\\d+}/comments", self.add_item_comment),
                web.patch("/api/{kind:kata|ohyo}s/comments/{comment_id}", self.update_item_comment),
                web.delete("/api/{kind:kata|ohyo}s/comments/{comment_id}", self.delete_item_comment),
                # moderation
                web.get("/api/users", self.list_users),
                web.put("/api/users/{user_id}/role", self.assign_role),
                web.get("/api/users/{user_id}/mutes", self.mute_history),
                web.post("/api/users/{user_id}/mute", self.mute_user),
                web.delete("/api/users/{user_id}/mute", self.unmute_user),
                web.get("/api/mutes", self.active_mutes),
                web.get("/api/mutes/statistics", self.mute_statistics),
                # storage
                web.get(URL_PREFIX + "/public/{bucket}/{path:.+}", self.public_object),
                web.get(URL_PREFIX + "/sign/{bucket}/{path:.+}", self.signed_object),
            ]
        )
        return app

    async def start(self) -> None:
        if self._started:
            return
        async with self._server_lock:
            if self._started:
                return
            self._app = self.build_app()
            self._runner = web.AppRunner(self._app)
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, self._host, self._port)
            await self._site.start()
            addresses = self._runner.addresses
            self._bound_port = int(addresses[0][1]) if addresses else None
            self._started = True
            log.info("API listening on http://%s:%s (ws path %s)", self._host, self.port, self._ws_path)

    async def stop(self) -> None:
        for ws in list(self._conns):
            await ws.close()
        self._conns.clear()

        if self._site is not None:
            await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()

        self._app = None
        self._runner = None
        self._site = None
        self._started = False

    @property
    def port(self) -> int:
        return self._bound_port or self._port

    def get_ws_url(self) -> str:
        return f"ws://{self._host}:{self.port}{self._ws_path}"

    async def broadcast_text(self, text: str) -> bool:
        """Send ``text`` to every connected client. Returns False when nobody received it."""
        if not self._started:
            await self.start()
        if not self._conns:
            return False
        delivered = False
        for ws in list(self._conns):
            try:
                await ws.send_str(text)
                delivered = True
            except ConnectionError:
                self._conns.discard(ws)
        return delivered

    # -------------------------------------------------------------- helpers

    @staticmethod
    def _bearer(request: web.Request) -> str | None:
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            return header.removeprefix("Bearer ").strip() or None
        return None

    async def _user(self, request: web.Request) -> AuthUser | None:
        assert self.auth is not None
        return await self.auth.get_user(self._bearer(request))

    async def _require_user(self, request: web.Request) -> AuthUser:
        user = await self._user(request)
        if user is None:
            raise NotAuthenticatedError()
        return user

    async def _require_content_editor(self, request: web.Request) -> AuthUser:
        """Katas and ohyos are curated by app hosts."""
        assert self.roles is not None
        user = await self._require_user(request)
        if not await self.roles.is_host(user.id):
            raise PermissionDeniedError("Only hosts can manage katas and ohyos")
        return user

    def _content(self, request: web.Request) -> ContentService:
        return ContentService(self.container, ContentKind(request.match_info["kind"]))

    # ------------------------------------------------------------ websocket

    async def _ws_handler(self, request: web.Request) -> web.StreamResponse:
        if self._ws_requires_auth:
            assert self.auth is not None
            token = request.query.get("token") or self._bearer(request)
            if await self.auth.get_user(token) is None:
                return web.Response(status=401, text="unauthorized")

        ws = web.WebSocketResponse(autoclose=True, autoping=True)
        await ws.prepare(request)
        self._conns.add(ws)
        try:
            async for msg in ws:
                if msg.type != web.WSMsgType.TEXT:
                    continue
                try:
                    payload = orjson.loads(msg.data)
                except orjson.JSONDecodeError:
                    await ws.send_str(_dumps({"ok": False, "error": "invalid_json"}))
                    continue
                if isinstance(payload, dict) and payload.get("type") == "ping":
                    await ws.send_str(_dumps({"type": "pong"}))
                    continue
                await ws.send_str(_dumps({"ok": False, "error": "unknown_type"}))
        finally:
            self._conns.discard(ws)
        return ws

    async def health(self, request: web.Request) -> web.Response:
        return _json({"ok": True, "app": self.container.config.app_name})

    # ----------------------------------------------------------------- auth

    async def sign_up(self, request: web.Request) -> web.Response:
        assert self.auth is not None
        data = await _body(request)
        session = await self.auth.sign_up(_text(data, "email"), _text(data, "password"), _text(data, "full_name"))
        return _json(session, status=201)

    async def sign_in(self, request: web.Request) -> web.Response:
        assert self.auth is not None
        data = await _body(request)
        return _json(await self.auth.sign_in(_text(data, "email"), _text(data, "password")))

    async def sign_out(self, request: web.Request) -> web.Response:
        assert self.auth is not None
        token = self._bearer(request)
        if token is None:
            raise NotAuthenticatedError()
        data = await _body(request)
        await self.auth.sign_out(token, data.get("refresh_token"))
        return _json({"ok": True})

    async def refresh(self, request: web.Request) -> web.Response:
        assert self.auth is not None
        data = await _body(request)
        return _json(await self.auth.refresh(_text(data, "refresh_token")))

    async def me(self, request: web.Request) -> web.Response:
        assert self.roles is not None and self.mutes is not None
        user = await self._require_user(request)
        role = await self.roles.get_user_role(user.id)
        mute = await self.mutes.get_current_mute(user.id)
        return _json({"user": user, "role": role, "mute": mute})

    async def update_me(self, request: web.Request) -> web.Response:
        assert self.auth is not None
        user = await self._require_user(request)
        data = await _body(request)
        return _json(await self.auth.update_user_name(user, _text(data, "full_name")))

    # -------------------------------------------------------------- avatars

    async def list_avatars(self, request: web.Request) -> web.Response:
        return _json(PRESET_AVATARS)

    async def get_avatar(self, request: web.Request) -> web.Response:
        assert self.avatars is not None
        return _json(await self.avatars.get_user_avatar(await self._require_user(request)))

    async def select_avatar(self, request: web.Request) -> web.Response:
        assert self.avatars is not None
        user = await self._require_user(request)
        data = await _body(request)
        return _json(await self.avatars.select_preset(user, _text(data, "avatar_id")))

    async def upload_avatar(self, request: web.Request) -> web.Response:
        assert self.avatars is not None
        user = await self._require_user(request)
        _, files = await _form(request)
        uploads = files.get("file") or []
        if not uploads:
            raise InvalidInputError("No file uploaded")
        return _json(await self.avatars.upload_custom(user, uploads[0].data, uploads[0].name), status=201)

    async def delete_avatar(self, request: web.Request) -> web.Response:
        assert self.avatars is not None
        deleted = await self.avatars.delete_custom(await self._require_user(request))
        return _json({"ok": True, "deleted": deleted})

    # ---------------------------------------------------------------- forum

    async def list_posts(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        category = request.query.get("category")
        posts = await self.forum.get_posts(
            category=ForumCategory(category) if category else None,
            search_query=request.query.get("q"),
            limit=_int_param(request, "limit", 50),
            offset=_int_param(request, "offset", 0),
        )
        return _json(posts)

    async def create_post(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        user = await self._user(request)
        fields, files = await _form(request)
        post = await self.forum.create_post(
            user,
            _text(fields, "title"),
            _text(fields, "content"),
            ForumCategory.parse(fields.get("category")),
            image_files=files.get("images", []),
            files=files.get("files", []),
        )
        return _json(post, status=201)

    async def get_post(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        return _json(await self.forum.get_post_with_comments(_path_int(request, "post_id")))

    async def update_post(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        user = await self._user(request)
        post_id = _path_int(request, "post_id")
        data = await _body(request)
        if "image_urls" in data:
            await self.forum.update_post_images(user, post_id, list(data["image_urls"]))
        if "file_urls" in data:
            await self.forum.update_post_files(user, post_id, list(data["file_urls"]))
        if "title" in data or "content" in data:
            category = data.get("category")
            post = await self.forum.update_post(
                user,
                post_id,
                _text(data, "title"),
                _text(data, "content"),
                ForumCategory(category) if category else None,
            )
            return _json(post)
        return _json(await self.forum.get_post(post_id))

    async def delete_post(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        await self.forum.delete_post(await self._user(request), _path_int(request, "post_id"))
        return _json({"ok": True})

    async def toggle_pin(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        return _json(await self.forum.toggle_pin(await self._user(request), _path_int(request, "post_id")))

    async def toggle_lock(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        return _json(await self.forum.toggle_lock(await self._user(request), _path_int(request, "post_id")))

    async def list_post_comments(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        post_id = _path_int(request, "post_id")
        if request.query.get("threaded") in ("1", "true"):
            return _json(organize_comments(await self.forum.get_comments(post_id)))
        comments = await self.forum.get_comments_paginated(
            post_id, limit=_int_param(request, "limit", 20), offset=_int_param(request, "offset", 0)
        )
        return _json(comments)

    async def add_post_comment(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        user = await self._user(request)
        fields, files = await _form(request)
        parent = fields.get("parent_comment_id")
        comment = await self.forum.add_comment(
            user,
            _path_int(request, "post_id"),
            _text(fields, "content"),
            int(parent) if parent not in (None, "") else None,
            image_files=files.get("images", []),
            files=files.get("files", []),
        )
        return _json(comment, status=201)

    async def update_post_comment(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        data = await _body(request)
        comment = await self.forum.update_comment(
            await self._user(request),
            _path_int(request, "comment_id"),
            _text(data, "content"),
            image_urls=data.get("image_urls"),
            file_urls=data.get("file_urls"),
        )
        return _json(comment)

    async def delete_post_comment(self, request: web.Request) -> web.Response:
        assert self.forum is not None
        deleted = await self.forum.delete_comment(await self._user(request), _path_int(request, "comment_id"))
        return _json({"ok": True, "deleted": deleted})

    # ---------------------------------------------------- likes / favorites

    async def list_likes(self, request: web.Request) -> web.Response:
        assert self.interactions is not None
        target_type = TargetType(request.match_info["target_type"])
        target_id = _path_int(request, "target_id")
        likes = await self.interactions.get_likes(target_type, target_id)
        liked = await self.interactions.is_liked(await self._user(request), target_type, target_id)
        return _json({"likes": likes, "count": len(likes), "liked": liked})

    async def toggle_like(self, request: web.Request) -> web.Response:
        assert self.interactions is not None
        liked = await self.interactions.toggle_like(
            await self._user(request), TargetType(request.match_info["target_type"]), _path_int(request, "target_id")
        )
        return _json({"liked": liked})

    async def list_favorite_ids(self, request: web.Request) -> web.Response:
        assert self.interactions is not None
        ids = await self.interactions.get_user_favorite_ids(
            await self._user(request), TargetType(request.match_info["target_type"])
        )
        return _json(ids)

    async def toggle_favorite(self, request: web.Request) -> web.Response:
        assert self.interactions is not None
        favorited = await self.interactions.toggle_favorite(
            await self._user(request), TargetType(request.match_info["target_type"]), _path_int(request, "target_id")
        )
        return _json({"favorited": favorited})

    # ------------------------------------------------------- katas / ohyos

    async def list_items(self, request: web.Request) -> web.Response:
        category = request.query.get("category")
        items = await self._content(request).list_items(
            request.query.get("q", ""), OhyoCategory(category) if category else None
        )
        return _json(items)

    async def get_item(self, request: web.Request) -> web.Response:
        content = self._content(request)
        item_id = _path_int(request, "item_id")
        session = await content.edit_session(item_id)
        return _json({"item": await content.get_item(item_id), "images": session.current_urls})

    async def add_item(self, request: web.Request) -> web.Response:
        await self._require_content_editor(request)
        fields, files = await _form(request)
        content = self._content(request)
        await content.load()
        item = await content.add_item(
            _text(fields, "name"),
            _text(fields, "description"),
            _text(fields, "style"),
            images=files.get("images", []),
            video_urls=_video_urls(fields),
        )
        return _json(item, status=201)

    async def update_item(self, request: web.Request) -> web.Response:
        await self._require_content_editor(request)
        data = await _body(request)
        content = self._content(request)
        current = await content.get_item(_path_int(request, "item_id"))
        item = await content.update_item(
            current.id,
            name=_text(data, "name", current.name),
            description=_text(data, "description", current.description),
            style=_text(data, "style", current.style),
            video_urls=_video_urls(data) if "video_urls" in data else current.video_urls,
        )
        return _json(item)

    async def update_item_images(self, request: web.Request) -> web.Response:
        await self._require_content_editor(request)
        data = await _body(request)
        urls = data.get("image_urls")
        if not isinstance(urls, list):
            raise InvalidInputError("image_urls must be a list")
        content = self._content(request)
        return _json(await content.update_image_urls(_path_int(request, "item_id"), [str(u) for u in urls]))

    async def upload_item_images(self, request: web.Request) -> web.Response:
        """Add uploaded images to an item through an edit session."""
        await self._require_content_editor(request)
        _, files = await _form(request)
        session = await self._content(request).edit_session(_path_int(request, "item_id"))
        session.add_images(files.get("images", []))
        await session.save()
        return _json({"images": session.current_urls}, status=201)

    async def delete_item(self, request: web.Request) -> web.Response:
        await self._require_content_editor(request)
        await self._content(request).delete_item(_path_int(request, "item_id"))
        return _json({"ok": True})

    async def reorder_items(self, request: web.Request) -> web.Response:
        await self._require_content_editor(request)
        data = await _body(request)
        content = self._content(request)
        await content.load()
        await content.reorder_items(int(data.get("old_index", -1)), int(data.get("new_index", -1)))
        return _json(content.items)

    async def list_item_comments(self, request: web.Request) -> web.Response:
        assert self.interactions is not None
        comments = await self.interactions.get_comments(
            ContentKind(request.match_info["kind"]), _path_int(request, "item_id")
        )
        if request.query.get("threaded") in ("1", "true"):
            return _json(organize_comments(comments))
        return _json(comments)

    async def add_item_comment(self, request: web.Request) -> web.Response:
        assert self.interactions is not None
        data = await _body(request)
        parent = data.get("parent_comment_id")
        comment = await self.interactions.add_comment(
            await self._user(request),
            ContentKind(request.match_info["kind"]),
            _path_int(request, "item_id"),
            _text(data, "content"),
            int(parent) if parent is not None else None,
        )
        return _json(comment, status=201)

    async def update_item_comment(self, request: web.Request) -> web.Response:
        assert self.interactions is not None
        data = await _body(request)
        comment = await self.interactions.update_comment(
            await self._user(request),
            ContentKind(request.match_info["kind"]),
            _path_int(request, "comment_id"),
            _text(data, "content"),
        )
        return _json(comment)

    async def delete_item_comment(self, request: web.Request) -> web.Response:
        assert self.interactions is not None
        await self.interactions.delete_comment(
            await self._user(request), ContentKind(request.match_info["kind"]), _path_int(request, "comment_id")
        )
        return _json({"ok": True})

    # ----------------------------------------------------------- moderation

    async def list_users(self, request: web.Request) -> web.Response:
        assert self.roles is not None
        user = await self._require_user(request)
        if not await self.roles.can_assign_roles(user.id):
            raise PermissionDeniedError("You do not have permission to view users")
        return _json(await self.roles.get_all_users_with_roles())

    async def assign_role(self, request: web.Request) -> web.Response:
        assert self.roles is not None
        data = await _body(request)
        role = UserRole(_text(data, "role"))
        actor = await self._user(request)
        user_id = request.match_info["user_id"]
        if role is UserRole.HOST:
            await self.roles.grant_host(actor, user_id)
        else:
            await self.roles.assign_role(actor, user_id, role)
        return _json({"ok": True, "role": role})

    async def mute_history(self, request: web.Request) -> web.Response:
        assert self.mutes is not None
        user = await self._require_user(request)
        user_id = request.match_info["user_id"]
        if user.id != user_id and not await self.mutes.can_mute_users(user):
            raise PermissionDeniedError("You do not have permission to view mutes")
        return _json(await self.mutes.get_mute_history(user_id))

    async def mute_user(self, request: web.Request) -> web.Response:
        assert self.mutes is not None
        data = await _body(request)
        mute = await self.mutes.mute_user(
            await self._user(request),
            request.match_info["user_id"],
            MuteDuration(_text(data, "duration", MuteDuration.ONE_DAY.value)),
            _text(data, "reason"),
        )
        return _json(mute, status=201)

    async def unmute_user(self, request: web.Request) -> web.Response:
        assert self.mutes is not None
        lifted = await self.mutes.unmute_user(await self._user(request), request.match_info["user_id"])
        return _json({"ok": True, "unmuted": lifted})

    async def active_mutes(self, request: web.Request) -> web.Response:
        assert self.mutes is not None
        if not await self.mutes.can_mute_users(await self._require_user(request)):
            raise PermissionDeniedError("You do not have permission to view mutes")
        return _json(await self.mutes.get_active_mutes())

    async def mute_statistics(self, request: web.Request) -> web.Response:
        assert self.mutes is not None
        if not await self.mutes.can_mute_users(await self._require_user(request)):
            raise PermissionDeniedError("You do not have permission to view mutes")
        return _json(await self.mutes.get_mute_statistics())

    # -------------------------------------------------------------- storage

    async def _object_response(self, bucket: str, path: str) -> web.Response:
        store = self.container.object_store
        if store is None:
            raise RuntimeError("Container is not set up properly.")
        data = await store.download(bucket, path)
        content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        return web.Response(body=data, content_type=content_type)

    async def public_object(self, request: web.Request) -> web.Response:
        bucket, path = request.match_info["bucket"], request.match_info["path"]
        buckets = self.container.config.buckets
        if bucket not in (buckets.kata_images, buckets.ohyo_images):
            raise NotFoundError("Object not found")
        return await self._object_response(bucket, path)

    async def signed_object(self, request: web.Request) -> web.Response:
        store = self.container.object_store
        if store is None:
            raise RuntimeError("Container is not set up properly.")
        bucket, path = request.match_info["bucket"], request.match_info["path"]
        token = request.query.get("token", "")
        expires = _int_param(request, "expires", 0)
        if not store.verify_signed_url(bucket, path, token, expires):
            raise PermissionDeniedError("Invalid or expired signature")
        return await self._object_response(bucket, path)
