"""
DB Agent - Agent Module

The command dispatcher. Commands arrive on the control link and are routed
to the agent itself or to a service manager; every command gets exactly one
reply. Most commands are handled one at a time, in order, because starting
and stopping services concurrently would race. Status commands have their
own queue and handler so the agent can always say what it is doing, even
while a command is running.
"""

import asyncio
import os
import subprocess
import sys
import time
import traceback
from typing import Callable, Dict, List, Optional

import psutil

from . import VERSION
from .channels import Selector, offer
from .errors import (
    AgentError, CmdRejectedError, CmdTimeoutError, QueueFullError, UnknownCmdError, UnknownServiceError,
)
from .proto import Cmd, Reply, ServiceData, utcnow
from .service import ServiceManager, agent_config

CMD_QUEUE_SIZE = 10
STATUS_QUEUE_SIZE = 10
CMD_TIMEOUT = 20.0
REPLY_FLUSH_TIMEOUT = 2.0
RESTART_GRACE = 3.0
START_LOCK_TIMEOUT = 30.0


class Agent:
    def __init__(self, ctx, logger, client, services: Dict[str, ServiceManager],
                 restarter: Optional[Callable[[], None]] = None,
                 cmd_timeout: float = CMD_TIMEOUT):
        """Initialize agent

        Args:
            ctx: Agent Context
            logger: Logger instance
            client: WebsocketClient for the control link, in channel mode
            services: Service managers by service name, in start order
            restarter: Blocking callable that starts the replacement agent,
                raising if it did not come up
            cmd_timeout: Seconds to wait for a command before replying with
                a timeout error
        """
        self.ctx = ctx
        self.logger = logger
        self.client = client
        self.services = services
        self.restarter = restarter
        self.cmd_timeout = cmd_timeout

        self.cmd_chan: asyncio.Queue = asyncio.Queue(maxsize=CMD_QUEUE_SIZE)
        self.status_chan: asyncio.Queue = asyncio.Queue(maxsize=STATUS_QUEUE_SIZE)
        self.cmdq: List[Cmd] = []
        self.stopping = False
        self.stop_reason = ""
        self._status = ctx.status
        self._stop = asyncio.Event()
        self._connect_chan = client.connect_chan()

    # ----------------------------------------------------------------------
    # Lifecycle

    async def start_services(self) -> None:
        """Start every service; one failing does not stop the others"""
        for name, manager in self.services.items():
            self._status.update("agent", f"Starting {name}")
            try:
                await manager.start()
            except Exception as e:
                self.logger.error(f"Cannot start {name}: {e}")
        self._status.update("agent", "Ready")

    async def stop_services(self) -> None:
        """Stop services in reverse start order"""
        for name, manager in reversed(list(self.services.items())):
            self._status.update("agent", f"Stopping {name}")
            try:
                await manager.stop()
            except Exception as e:
                self.logger.error(f"Error stopping {name}: {e}")

    def stop(self, reason: str = "") -> None:
        if reason and not self.stop_reason:
            self.stop_reason = reason
        self._stop.set()

    async def reconnect(self) -> None:
        """Drop the control link; the client reconnects by itself"""
        self.logger.info("Reconnecting to API")
        await self.client.disconnect()

    async def run(self) -> str:
        """Serve commands until stopped

        Returns:
            Why the agent stopped
        """
        self.client.start()
        cmd_task = asyncio.ensure_future(self.cmd_handler())
        status_task = asyncio.ensure_future(self.status_handler())

        selector = Selector()
        selector.add("cmd", self.client.recv_chan)
        selector.add("error", self.client.error_chan)
        selector.add("connect", self._connect_chan)
        selector.add("stop", self._stop)

        self._status.update("agent", "Ready")
        self.logger.info("Ready")
        try:
            while True:
                event, value = await selector.next()
                if event == "cmd":
                    await self.dispatch(value)
                elif event == "error":
                    self.logger.warn(f"Control link error: {value}")
                elif event == "connect":
                    if value:
                        self.logger.info("Connected to API")
                    else:
                        self.logger.warn("Lost connection to API")
                elif event == "stop":
                    break
                self._status.update("agent", "Stopping" if self.stopping else "Ready")
        finally:
            selector.close()
            self._status.update("agent", "Stopping cmd handler")
            await _cancel(cmd_task)
            await self.stop_services()
            await _cancel(status_task)
            await self._flush_replies(REPLY_FLUSH_TIMEOUT)
            await self.client.stop()
            self._status.update("agent", "Stopped")
            self.logger.info("Agent stopped")
        return self.stop_reason

    async def _flush_replies(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while not self.client.send_chan.empty() and time.monotonic() < deadline:
            await asyncio.sleep(0.05)

    # ----------------------------------------------------------------------
    # Routing

    async def dispatch(self, cmd: Cmd) -> None:
        """Queue a command for its handler, or reply right away if it cannot be queued"""
        self.logger.debug(f"recv: {cmd}")
        if self.stopping:
            self.logger.info(f"Rejecting {cmd}: {self.stop_reason}")
            await self.reply(cmd.reply(None, CmdRejectedError(cmd.cmd, self.stop_reason)))
            return
        self._status.update_re("agent", "Queueing", cmd)
        if cmd.cmd == "Status":
            if not offer(self.status_chan, cmd):
                await self.reply(cmd.reply(None, QueueFullError(cmd.cmd, "statusQueue", STATUS_QUEUE_SIZE)))
        elif not offer(self.cmd_chan, cmd):
            await self.reply(cmd.reply(None, QueueFullError(cmd.cmd, "cmdQueue", CMD_QUEUE_SIZE)))

    async def reply(self, reply: Reply) -> None:
        await self.client.send_chan.put(reply)

    async def cmd_handler(self) -> None:
        while True:
            self._status.update("agent-cmd-handler", "Ready")
            cmd = await self.cmd_chan.get()
            reply = await self.handle_cmd(cmd)
            if reply.error:
                self.logger.warn(f"{cmd}: {reply.error}")
            self._status.update_re("agent-cmd-handler", "Replying", cmd)
            await self.reply(reply)
            if self.stopping:
                self.stop(self.stop_reason)

    async def status_handler(self) -> None:
        # Does not update self._status: it would only ever report itself
        while True:
            cmd = await self.status_chan.get()
            try:
                reply = await self.handle_status(cmd)
            except Exception as e:
                self.logger.critical(f"Status handler crashed: {cmd}: {e}\n{traceback.format_exc()}")
                reply = cmd.reply(None, e)
            await self.reply(reply)

    async def handle_cmd(self, cmd: Cmd) -> Reply:
        """Run one command under the command timeout

        A command that times out keeps running; its late result is logged.
        """
        self._status.update_re("agent-cmd-handler", "Running", cmd)
        self.logger.info(f"Running {cmd}")
        self.cmdq.append(cmd)
        task = asyncio.ensure_future(self._handle(cmd))
        try:
            done, _ = await asyncio.wait([task], timeout=self.cmd_timeout)
            if not done:
                task.add_done_callback(lambda t: self._late_reply(cmd, t))
                return cmd.reply(None, CmdTimeoutError(cmd.cmd))
            try:
                return task.result()
            except Exception as e:
                self.logger.critical(f"{cmd} crashed: {e}\n{traceback.format_exc()}")
                return cmd.reply(None, e)
        finally:
            self.cmdq.remove(cmd)
            self._status.update("agent-cmd-handler", "Idle")

    def _late_reply(self, cmd: Cmd, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        if task.exception() is not None:
            self.logger.error(f"{cmd} crashed after timeout: {task.exception()}")
        else:
            self.logger.warn(f"{cmd} finished after timeout: {task.result()}")

    async def _handle(self, cmd: Cmd) -> Reply:
        if cmd.service == "agent":
            return await self.handle_agent_cmd(cmd)
        manager = self.services.get(cmd.service)
        if manager is None:
            return cmd.reply(None, UnknownServiceError(cmd.service))
        return await manager.handle(cmd)

    async def handle_agent_cmd(self, cmd: Cmd) -> Reply:
        # Status never gets here: dispatch routes it to handle_status
        if cmd.cmd == "StartService":
            return await self._forward_service_cmd(cmd, "StartService")
        if cmd.cmd == "StopService":
            return await self._forward_service_cmd(cmd, "StopService")
        if cmd.cmd in ("GetConfig", "GetAllConfigs"):
            configs, errs = self.get_all_configs()
            return cmd.reply(configs, *[AgentError(e) for e in errs])
        if cmd.cmd == "Restart":
            return await self._restart(cmd)
        if cmd.cmd == "Version":
            return cmd.reply({'running': VERSION})
        if cmd.cmd == "Ping":
            return cmd.reply({'ts': utcnow().isoformat()})
        return cmd.reply(None, UnknownCmdError(cmd.cmd))

    async def _forward_service_cmd(self, cmd: Cmd, verb: str) -> Reply:
        self._status.update_re("agent-cmd-handler", verb, cmd)
        try:
            service_data = ServiceData.from_cmd(cmd)
        except ValueError as e:
            return cmd.reply(None, e)
        manager = self.services.get(service_data.name)
        if manager is None:
            if verb == "StopService":
                # A service we do not have cannot be running
                return cmd.reply(None)
            return cmd.reply(None, UnknownServiceError(service_data.name))
        service_cmd = Cmd(id=cmd.id, ts=cmd.ts, user=cmd.user, agent_uuid=cmd.agent_uuid,
                          service=service_data.name, cmd=verb, data=service_data.config)
        reply = await manager.handle(service_cmd)
        return Reply(id=cmd.id, data=reply.data, error=reply.error)

    async def _restart(self, cmd: Cmd) -> Reply:
        if self.restarter is None:
            return cmd.reply(None, AgentError("Restart is not supported"))
        self._status.update_re("agent-cmd-handler", "Restarting", cmd)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.restarter)
        except Exception as e:
            return cmd.reply(None, AgentError(f"Restart failed: {e}"))
        self.stopping = True
        self.stop_reason = f"agent received Restart command [{cmd}]"
        self.logger.info(f"STOP: {self.stop_reason}")
        return cmd.reply(None)

    async def handle_status(self, cmd: Cmd) -> Reply:
        if cmd.service == "":
            return cmd.reply(self.status())
        if cmd.service == "agent":
            return cmd.reply(self.internal_status())
        manager = self.services.get(cmd.service)
        if manager is None:
            return cmd.reply(None, UnknownServiceError(cmd.service))
        return await manager.handle(cmd)

    # ----------------------------------------------------------------------
    # Status and config

    def internal_status(self) -> Dict[str, str]:
        status = self._status.all()
        status['agent-cmd-queue'] = "\n".join(f"[{n}] {cmd}" for n, cmd in enumerate(self.cmdq))
        return status

    def status(self) -> Dict[str, str]:
        """Aggregate status of the agent, the control link and every service"""
        status = self.internal_status()
        status.update(self.client.get_status())
        status['agent-pid'] = str(os.getpid())
        try:
            status['agent-rss'] = str(psutil.Process().memory_info().rss)
        except psutil.Error:
            pass
        for name, manager in self.services.items():
            try:
                status.update(manager.status())
            except Exception as e:
                status[name] = f"ERROR: {e}"
        return status

    def get_all_configs(self):
        config = dict(self.ctx.config)
        if config.get('api_key'):
            config['api_key'] = "<hidden>"
        configs = [agent_config("agent", config)]
        errs: List[str] = []
        for name, manager in self.services.items():
            try:
                service_configs, service_errs = manager.get_config()
            except Exception as e:
                errs.append(f"{name}: {e}")
                continue
            configs.extend(service_configs)
            errs.extend(service_errs)
        return configs, errs


async def _cancel(task: asyncio.Task) -> None:
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


# --------------------------------------------------------------------------
# Self-restart


class Restarter:
    """Starts a replacement agent and checks that it stays up

    The replacement finds start.lock and waits for this process to exit
    before it starts its services.
    """

    def __init__(self, logger, basedir, argv: Optional[List[str]] = None,
                 grace: float = RESTART_GRACE, popen=subprocess.Popen):
        self.logger = logger
        self.basedir = basedir
        self.argv = argv if argv is not None else sys.argv[1:]
        self.grace = grace
        self.popen = popen

    def command(self) -> List[str]:
        binary = os.path.join(self.basedir.dir("bin"), "agent")
        if os.path.isfile(binary) and os.access(binary, os.X_OK):
            return [binary] + self.argv
        return [sys.executable, os.path.abspath(sys.argv[0])] + self.argv

    def __call__(self) -> None:
        """Start the replacement (blocking)

        Raises:
            AgentError: If the replacement could not start or exited within
                the grace period
        """
        lock_file = self.basedir.lock_file
        try:
            with open(lock_file, 'w') as f:
                f.write(f"{os.getpid()}\n")
        except OSError as e:
            raise AgentError(f"Cannot write {lock_file}: {e}") from e

        command = self.command()
        self.logger.info(f"Starting {' '.join(command)}")
        try:
            child = self.popen(command, stdin=subprocess.DEVNULL, start_new_session=True)
        except OSError as e:
            _remove(lock_file)
            raise AgentError(f"Cannot start {command[0]}: {e}") from e

        try:
            code = psutil.Process(child.pid).wait(timeout=self.grace)
        except psutil.TimeoutExpired:
            self.logger.info(f"Replacement agent running, PID {child.pid}")
            return
        except psutil.NoSuchProcess:
            code = child.poll()
        _remove(lock_file)
        raise AgentError(f"Replacement agent exited with code {code}")


def wait_for_start_lock(logger, basedir, timeout: float = START_LOCK_TIMEOUT,
                        sleep: Callable[[float], None] = time.sleep) -> None:
    """Wait for the agent that started this one to exit, then remove start.lock"""
    lock_file = basedir.lock_file
    try:
        with open(lock_file, 'r') as f:
            content = f.read().strip()
    except FileNotFoundError:
        return
    except OSError as e:
        logger.warn(f"Cannot read {lock_file}: {e}")
        content = ""

    try:
        pid = int(content)
    except ValueError:
        pid = 0
    if pid > 0 and pid != os.getpid():
        logger.info(f"Waiting for agent PID {pid} to exit")
        deadline = time.monotonic() + timeout
        while psutil.pid_exists(pid):
            if time.monotonic() >= deadline:
                logger.warn(f"Agent PID {pid} still running after {timeout:.0f}s")
                break
            sleep(0.5)
    _remove(lock_file)


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
