"""
Auto-approval of loopback operator devices.

Internal clients of the gateway (cron, sessions, tools, the control UI
behind the proxy) connect from loopback and would otherwise stall on
"pairing required". Requests from any other address are left for a human.
"""

import asyncio
import ipaddress
import json
import logging

from .commands import CommandRunner, run_cmd
from .config import Config

logger = logging.getLogger(__name__)

# Polling schedule: a burst in the first minute after the gateway comes up,
# then a steady cadence for stragglers.
BURST_DELAYS = (3.0, 3.0, 4.0, 5.0, 5.0, 10.0, 15.0, 15.0)
STEADY_INTERVAL = 60.0


def is_loopback(address) -> bool:
    """True for IPv4/IPv6 loopback, including IPv4-mapped IPv6 loopback."""
    if not isinstance(address, str) or not address:
        return False
    try:
        ip = ipaddress.ip_address(address.strip().strip("[]"))
    except ValueError:
        return False
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        return mapped.is_loopback
    return ip.is_loopback


def _field(record: dict, *names: str):
    for name in names:
        value = record.get(name)
        if value:
            return value
    return None


def request_id(record: dict) -> str | None:
    value = _field(record, "requestId", "request_id", "id", "deviceId", "device_id")
    return str(value) if value is not None else None


def is_auto_approvable(record: dict) -> bool:
    """Pending + operator role + loopback remote address."""
    status = str(_field(record, "status", "state") or "").lower()
    role = str(record.get("role") or "").lower()
    remote = _field(record, "remote", "remoteAddr", "ip")
    return status == "pending" and role == "operator" and is_loopback(remote)


class DeviceApprover:
    """Polls the backend for pending pairing requests and approves loopback operators."""

    def __init__(self, settings: Config, run: CommandRunner = run_cmd):
        self.settings = settings
        self._run = run
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _cli(self, args: list[str]):
        return await self._run(
            self.settings.claw_args(args),
            extra_env=self.settings.child_env(),
            timeout=self.settings.command_timeout,
        )

    async def list_pending(self) -> list[dict]:
        """Pending device records, or [] when the backend cannot answer yet."""
        result = await self._cli(["devices", "list", "--json"])
        if not result.ok:
            # Expected while the gateway is still booting
            if "gateway connect failed" not in result.output:
                logger.debug(f"devices list exited {result.code}: {result.output.strip()}")
            return []
        try:
            records = json.loads(result.output)
        except ValueError:
            return []
        if not isinstance(records, list):
            return []
        return [r for r in records if isinstance(r, dict)]

    async def poll_once(self) -> int:
        """Approve every pending loopback operator request. Returns the number approved."""
        approved = 0
        for record in await self.list_pending():
            if not is_auto_approvable(record):
                continue
            rid = request_id(record)
            if not rid:
                logger.info("Pending loopback operator request has no request id, skipping")
                continue

            logger.info(f"Auto-approving loopback operator device request {rid}")
            result = await self._cli(["devices", "approve", rid])
            if result.ok:
                approved += 1
                logger.info(f"Approved device request {rid}")
            else:
                logger.warning(f"Approve failed for {rid}: exit={result.code} {result.output.strip()}")
        return approved

    def start(self):
        """Start the polling loop. No-op if already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Device auto-approval loop started")

    async def stop(self):
        """Stop the polling loop. Safe to call when not running."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Device auto-approval loop stopped")

    async def _poll_loop(self):
        burst = iter(BURST_DELAYS)
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error in device approval loop: {e}")
            await asyncio.sleep(next(burst, STEADY_INTERVAL))
