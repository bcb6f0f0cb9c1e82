"""
DB Agent - WebSocket Client Module

Persistent duplex JSON connection to the management service. The agent uses
one client for the control link (commands in, replies out) and the log
relay uses another, send-only, for log entries.

Direct mode: connect(), send(), recv(), disconnect().
Channel mode: start() runs a receive task that puts Cmds on recv_chan, a
send task that drains Replies from send_chan, and a supervisor that
reconnects with backoff whenever either fails.
"""

import asyncio
import collections
import json
import os
import sys
from typing import Any, Callable, List, Optional

import websockets

from .backoff import Backoff
from .channels import offer
from .errors import NotConnectedError
from .proto import LOG_DEBUG, LOG_WARNING, AgentJSONEncoder, Cmd
from .status import Status

SEND_BUFFER_SIZE = 10
RECV_BUFFER_SIZE = 10
ERROR_BUFFER_SIZE = 2
CONNECT_TIMEOUT = 10
SEND_TIMEOUT = 5


class WebsocketClient:
    """WebSocket client for one agent link"""

    def __init__(self, url: str, api_key: str, version: str, logger,
                 name: str = "agent-ws", hello: bool = False,
                 connect_func: Optional[Callable[..., Any]] = None,
                 backoff: Optional[Backoff] = None,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        """Initialize WebSocket client

        Args:
            url: WebSocket URL (wss://...)
            api_key: Agent API key, sent as X-Agent-Token
            version: Agent version string
            logger: Logger instance
            name: Status name of this link
            hello: Send the agent_hello handshake after connecting
            connect_func: websockets.connect compatible factory
            backoff: Reconnect backoff
            sleep: Sleep coroutine used between connect attempts
        """
        self.url = url
        self.api_key = api_key
        self.version = version
        self.logger = logger
        self.name = name
        self.hello = hello
        self.connect_func = connect_func or websockets.connect
        self.backoff = backoff or Backoff()
        self.sleep = sleep

        self.ws = None
        self.connected = False
        self.recv_chan: asyncio.Queue = asyncio.Queue(maxsize=RECV_BUFFER_SIZE)
        self.send_chan: asyncio.Queue = asyncio.Queue(maxsize=SEND_BUFFER_SIZE)
        self.error_chan: asyncio.Queue = asyncio.Queue(maxsize=ERROR_BUFFER_SIZE)
        self._connect_chans: List[asyncio.Queue] = []
        self._unsent: collections.deque = collections.deque()
        self._lock = asyncio.Lock()
        self._supervisor: Optional[asyncio.Task] = None
        self.status = Status([name, f"{name}-link"])

    async def connect(self) -> None:
        """Connect, retrying with backoff until connected"""
        while True:
            # Wait before every attempt so a fleet of agents does not hammer the API.
            self.status.update(self.name, "Connect wait")
            await self.sleep(self.backoff.wait())
            try:
                await self.connect_once(CONNECT_TIMEOUT)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.warn(f"Cannot connect to {self.url}: {e}")
                continue
            self.backoff.success()
            return

    async def connect_once(self, timeout: float = CONNECT_TIMEOUT) -> None:
        """Make one connection attempt

        Raises:
            OSError, websockets.exceptions.WebSocketException, asyncio.TimeoutError
        """
        self.status.update(self.name, f"Connecting {self.url}")
        self.logger.debug(f"Connecting to {self.url}")
        ws = await self.connect_func(
            self.url,
            additional_headers={'X-Agent-Token': self.api_key},
            open_timeout=timeout,
            ping_interval=20,
            ping_timeout=10,
        )
        async with self._lock:
            self.ws = ws
            self.connected = True
        self.status.update(self.name, f"Connected {self.url}")

        if self.hello:
            await self.send({
                'type': 'agent_hello',
                'version': self.version,
                'hostname': os.uname().nodename,
                'platform': sys.platform,
            }, SEND_TIMEOUT)

        self.logger.info(f"Connected to {self.url}")
        self._notify_connect(True)

    async def disconnect(self) -> None:
        """Close the connection; notifies subscribers once per connection"""
        async with self._lock:
            if not self.connected:
                return
            ws, self.ws = self.ws, None
            self.connected = False
        try:
            await ws.close()
        except Exception as e:
            # The remote end may already be gone
            self.logger.offline(LOG_DEBUG, f"Error closing {self.url}: {e}")
        self.status.update(self.name, "Disconnected")
        self._notify_connect(False)

    async def send(self, data: Any, timeout: Optional[float] = SEND_TIMEOUT) -> None:
        """Send one JSON message

        Raises:
            NotConnectedError: If not connected
            asyncio.TimeoutError: If the send did not finish in time
        """
        ws = self.ws
        if ws is None or not self.connected:
            raise NotConnectedError(self.url)
        if hasattr(data, 'to_dict'):
            data = data.to_dict()
        message = json.dumps(data, cls=AgentJSONEncoder)
        if timeout:
            await asyncio.wait_for(ws.send(message), timeout)
        else:
            await ws.send(message)

    async def recv(self, timeout: Optional[float] = None) -> Any:
        """Receive one JSON message

        Raises:
            NotConnectedError: If not connected
            websockets.exceptions.ConnectionClosed: If the remote end hung up
            ValueError: If the message is not valid JSON
        """
        ws = self.ws
        if ws is None or not self.connected:
            raise NotConnectedError(self.url)
        if timeout:
            message = await asyncio.wait_for(ws.recv(), timeout)
        else:
            message = await ws.recv()
        return json.loads(message)

    def connect_chan(self) -> asyncio.Queue:
        """Subscribe to connection state changes (True connected, False not)"""
        chan: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._connect_chans.append(chan)
        return chan

    def _notify_connect(self, state: bool) -> None:
        for chan in self._connect_chans:
            if not offer(chan, state):
                # Only the latest state matters
                try:
                    chan.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                offer(chan, state)

    # Channel mode

    def start(self) -> None:
        if self._supervisor is None or self._supervisor.done():
            self._supervisor = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        task, self._supervisor = self._supervisor, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.disconnect()

    async def _run(self) -> None:
        while True:
            if not self.connected:
                await self.connect()
            recv_task = asyncio.ensure_future(self._recv_loop())
            send_task = asyncio.ensure_future(self._send_loop())
            try:
                await asyncio.wait([recv_task, send_task], return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (recv_task, send_task):
                    if not task.done():
                        task.cancel()
                await asyncio.gather(recv_task, send_task, return_exceptions=True)
            await self.disconnect()

    async def _recv_loop(self) -> None:
        while True:
            try:
                data = await self.recv()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.offline(LOG_DEBUG, f"recv error: {e}")
                offer(self.error_chan, e)
                return
            if not isinstance(data, dict):
                self.logger.warn(f"Invalid command: {str(data)[:100]}")
                continue
            await self.recv_chan.put(Cmd.from_dict(data))

    async def _send_loop(self) -> None:
        while True:
            if self._unsent:
                reply = self._unsent.popleft()
            else:
                reply = await self.send_chan.get()
            try:
                await self.send(reply, SEND_TIMEOUT)
            except asyncio.TimeoutError:
                # Resend first after reconnecting
                self._unsent.appendleft(reply)
                self.logger.offline(LOG_WARNING, f"Timeout sending reply {getattr(reply, 'id', '')}")
                return
            except asyncio.CancelledError:
                self._unsent.appendleft(reply)
                raise
            except Exception as e:
                self._unsent.appendleft(reply)
                self.logger.offline(LOG_DEBUG, f"send error: {e}")
                offer(self.error_chan, e)
                return

    def get_status(self) -> dict:
        self.status.update(f"{self.name}-link", self.url)
        return self.status.all()
