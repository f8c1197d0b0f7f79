"""
Authenticated reverse proxy to the gateway.

Everything outside /setup is gated by the operator password, then
forwarded to the loopback gateway with the shared token as a bearer
credential. The gateway's control UI HTML gets a small script that fetches
the token so the browser client can connect without manual pairing.
"""

import asyncio
import logging

import httpx
import websockets
from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket
from fastapi.responses import HTMLResponse, RedirectResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .auth import AuthResult, check_basic_auth, require_operator
from .commands import token_log_safe

logger = logging.getLogger(__name__)

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
CONTROL_UI_PATHS = {"/", "/openclaw", "/openclaw/"}
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
# Set by the wrapper on the rewritten control UI page
REWRITTEN_HEADERS = {"content-length", "content-encoding", "content-type", "cache-control"}

AUTO_TOKEN_SCRIPT = """
<script data-auto-token>
(function(){
  fetch("/setup/api/gateway-token", { credentials: "same-origin" })
    .then(function(r){ return r.ok ? r.json() : Promise.reject(new Error("auth required")); })
    .then(function(data){
      var TOKEN = data.token; if (!TOKEN) return;
      function applyToken() {
        try {
          var keys = ["gateway-token", "gatewayToken", "openclaw-token", "token", "oc:gateway-token", "oc:token", "openclaw-gateway-token"];
          for (var i = 0; i < keys.length; i++) localStorage.setItem(keys[i], TOKEN);
        } catch(e) {}
      }
      var nativeSetter = Object.getOwnPropertyDescriptor(HTMLInputElement.prototype, "value").set;
      function fill() {
        var filled = false;
        var inputs = document.querySelectorAll("input");
        for (var j = 0; j < inputs.length; j++) {
          var el = inputs[j];
          var ctx = ((el.placeholder || "") + " " + (el.getAttribute("aria-label") || "")).toLowerCase();
          var label = el.closest("label");
          if (label) ctx += " " + label.textContent.toLowerCase();
          var isToken = ctx.indexOf("token") >= 0 && ctx.indexOf("session") < 0 && ctx.indexOf("url") < 0 && ctx.indexOf("password") < 0;
          if (isToken && el.value !== TOKEN) {
            nativeSetter.call(el, TOKEN);
            el.dispatchEvent(new Event("input", {bubbles: true}));
            el.dispatchEvent(new Event("change", {bubbles: true}));
            el.setAttribute("type", "password");
            filled = true;
          }
        }
        return filled;
      }
      applyToken();
      var tries = 0;
      var timer = setInterval(function(){ applyToken(); fill(); if (++tries >= 24) clearInterval(timer); }, 500);
    })
    .catch(function(){});
})();
</script>"""

router = APIRouter()


def inject_token_script(html: str) -> str:
    """Insert the bootstrap script before </head>, else </body>, else at the end."""
    for marker in ("</head>", "</body>"):
        if marker in html:
            return html.replace(marker, f"{AUTO_TOKEN_SCRIPT}\n{marker}", 1)
    return html + AUTO_TOKEN_SCRIPT


def _upstream_target(path: str, query: str) -> str:
    return f"{path}?{query}" if query else path


def upstream_headers(request: Request, token: str) -> dict[str, str]:
    """Client headers minus hop-by-hop and credentials, plus forwarding info and the bearer token."""
    headers = {
        key: value
        for key, value in request.headers.items()
        if key.lower() not in HOP_BY_HOP and key.lower() not in ("host", "authorization")
    }
    client_host = request.client.host if request.client else ""
    forwarded_for = request.headers.get("x-forwarded-for")
    headers["x-forwarded-for"] = f"{forwarded_for}, {client_host}" if forwarded_for else client_host
    headers["x-forwarded-proto"] = request.url.scheme
    headers["x-forwarded-host"] = request.headers.get("host", "")
    headers["authorization"] = f"Bearer {token}"
    return headers


async def forward(request: Request) -> Response:
    """Stream a request to the gateway and its response back to the client."""
    state = request.app.state
    client: httpx.AsyncClient = state.http_client
    target = _upstream_target(request.url.path, request.url.query)

    if state.settings.debug:
        logger.debug(f"HTTP {request.method} {target} (token fingerprint: {token_log_safe(state.token)})")

    upstream_request = client.build_request(
        request.method,
        target,
        headers=upstream_headers(request, state.token),
        content=await request.body(),
    )
    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.TransportError as e:
        logger.error(f"Proxy error for {request.method} {request.url.path}: {e}")
        raise HTTPException(status_code=502, detail=f"Gateway unreachable: {e}")

    response = StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    response.raw_headers = [
        (key.lower().encode("latin-1"), value.encode("latin-1"))
        for key, value in upstream.headers.multi_items()
        if key.lower() not in HOP_BY_HOP
    ]
    return response


async def render_control_ui(request: Request) -> Response | None:
    """Fetch the control UI page and inject the token script. None means fall back to plain proxying."""
    state = request.app.state
    client: httpx.AsyncClient = state.http_client
    try:
        headers = upstream_headers(request, state.token)
        # The body is rewritten, so ask for something httpx can always decode
        headers.pop("accept-encoding", None)
        upstream = await client.get(
            _upstream_target(request.url.path, request.url.query),
            headers=headers,
            follow_redirects=True,
        )
    except httpx.TransportError as e:
        logger.error(f"Control UI fetch failed: {e}")
        return None

    if not upstream.is_success or "text/html" not in upstream.headers.get("content-type", ""):
        return None
    response = HTMLResponse(inject_token_script(upstream.text), headers={"cache-control": "no-store"})
    response.raw_headers.extend(
        (key.lower().encode("latin-1"), value.encode("latin-1"))
        for key, value in upstream.headers.multi_items()
        if key.lower() not in HOP_BY_HOP and key.lower() not in REWRITTEN_HEADERS
    )
    return response


@router.api_route("/{path:path}", methods=PROXY_METHODS, dependencies=[Depends(require_operator)])
async def proxy_http(request: Request, path: str):
    """Catch-all: onboarding redirect/wait page, else ensure the gateway and proxy."""
    state = request.app.state

    if state.onboarder.in_progress:
        return state.templates.TemplateResponse(request, "onboarding.html", {}, status_code=503)
    if not state.settings.is_configured():
        return RedirectResponse("/setup", status_code=302)

    ok, message = await state.supervisor.ensure_running(state.token)
    if not ok:
        raise HTTPException(status_code=503, detail=f"Gateway not ready: {message}")

    if request.method == "GET" and request.url.path in CONTROL_UI_PATHS:
        response = await render_control_ui(request)
        if response is not None:
            return response
    return await forward(request)


@router.websocket("/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str):
    """Relay a WebSocket to the gateway. Auth failures reject the handshake."""
    state = websocket.app.state
    settings = state.settings

    if not settings.is_configured():
        await websocket.close(code=1013)
        return
    auth = check_basic_auth(websocket.headers.get("authorization"), settings.setup_password)
    if auth is not AuthResult.OK:
        logger.warning(f"Rejected WebSocket {websocket.url.path}: {auth.value}")
        await websocket.close(code=1008)
        return
    if not state.token:
        logger.error("Cannot proxy WebSocket: gateway token is empty")
        await websocket.close(code=1011)
        return

    ok, message = await state.supervisor.ensure_running(state.token)
    if not ok:
        logger.error(f"Cannot proxy WebSocket, gateway not ready: {message}")
        await websocket.close(code=1013)
        return

    target = settings.gateway_ws_target + _upstream_target(websocket.url.path, websocket.url.query)
    protocols = [p.strip() for p in websocket.headers.get("sec-websocket-protocol", "").split(",") if p.strip()]

    try:
        async with websockets.connect(
            target,
            additional_headers={"Authorization": f"Bearer {state.token}"},
            subprotocols=protocols or None,
            origin=websocket.headers.get("origin"),
            max_size=None,
        ) as upstream:
            await websocket.accept(subprotocol=upstream.subprotocol)
            logger.info(f"Proxying WebSocket {websocket.url.path}")
            await _relay(websocket, upstream)
    except (OSError, websockets.InvalidHandshake) as e:
        logger.error(f"WebSocket upstream connect failed for {websocket.url.path}: {e}")
        if websocket.client_state is WebSocketState.CONNECTING:
            await websocket.close(code=1011)


async def _relay(websocket: WebSocket, upstream):
    tasks = [
        asyncio.create_task(_client_to_upstream(websocket, upstream)),
        asyncio.create_task(_upstream_to_client(websocket, upstream)),
    ]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        error = task.exception()
        if error is not None and not isinstance(error, (WebSocketDisconnect, websockets.ConnectionClosed)):
            logger.warning(f"WebSocket relay error: {error}")


async def _client_to_upstream(websocket: WebSocket, upstream):
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            await upstream.close()
            return
        if message.get("text") is not None:
            await upstream.send(message["text"])
        elif message.get("bytes") is not None:
            await upstream.send(message["bytes"])


async def _upstream_to_client(websocket: WebSocket, upstream):
    try:
        async for message in upstream:
            if isinstance(message, bytes):
                await websocket.send_bytes(message)
            else:
                await websocket.send_text(message)
    except websockets.ConnectionClosed:
        pass
    if websocket.client_state is WebSocketState.CONNECTED:
        # 1005/1006 are reserved and may not be sent in a close frame
        code = upstream.close_code
        await websocket.close(code=code if code and code not in (1005, 1006) else 1000)
