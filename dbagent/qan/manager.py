"""
DB Agent - QAN Manager Module

Service manager for Query Analytics: one analyzer per MySQL instance,
each with its own config (config/qan-<UUID>.conf), clock subscription and
restart channel. Configs are saved on StartService and started again at
boot.
"""

import asyncio
import glob
import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..channels import Selector, drain, offer
from ..errors import AgentError, ConfigError, InvalidCmdDataError, ServiceIsNotRunningError, ServiceIsRunningError
from ..proto import Cmd, Reply
from ..service import ServiceManager, agent_config
from ..status import Status
from .analyzer import Analyzer
from .config import Config
from .interval import FileIntervalIter, PerfSchemaIntervalIter
from .perfschema import PerfSchemaWorker
from .slowlog import SlowLogWorker


@dataclass
class Running:
    """One analyzer and everything the manager must release when it stops"""
    config: Config
    dsn: str
    analyzer: Analyzer
    tick_chan: asyncio.Queue
    restart_chan: asyncio.Queue
    watch_chan: asyncio.Queue


class Manager(ServiceManager):
    name = "qan"

    def __init__(self, ctx, logger, clock, spool, mrms, factory, repo,
                 analyzer_factory: Optional[Callable[..., Analyzer]] = None):
        """Initialize QAN manager

        Args:
            ctx: Agent Context
            logger: Logger instance
            clock: Shared ticker Clock
            spool: Object with write(service, data), the data service
            mrms: MySQL restart Monitor
            factory: ConnectionFactory for MySQL connectors
            repo: Instance Repo, resolves instance UUIDs to DSNs
            analyzer_factory: Makes analyzers, defaults to make_analyzer
        """
        self.ctx = ctx
        self.logger = logger
        self.clock = clock
        self.spool = spool
        self.mrms = mrms
        self.factory = factory
        self.repo = repo
        self.analyzer_factory = analyzer_factory or self.make_analyzer
        self.analyzers: Dict[str, Running] = {}
        self._status = Status(["qan"])
        self._lock = asyncio.Lock()
        self._restart_chan: Optional[asyncio.Queue] = None
        self._router: Optional[asyncio.Task] = None
        self._router_stop = asyncio.Event()

    # ----------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to MySQL restarts and start every saved analyzer"""
        if self._router is not None:
            return
        self._status.update("qan", "Starting")
        self._restart_chan = self.mrms.global_subscribe()
        self._router_stop = asyncio.Event()
        self._router = asyncio.ensure_future(self._route_restarts())

        for config_file in sorted(glob.glob(os.path.join(self.ctx.basedir.dir("config"), "qan-*.conf"))):
            service = os.path.basename(config_file)[:-len(".conf")]
            try:
                config = Config.from_dict(self.ctx.basedir.read_config(service))
                async with self._lock:
                    await self._start_analyzer(config)
            except Exception as e:
                self.logger.error(f"Cannot start QAN from {config_file}: {e}")
        self._status.update("qan", "Running")
        self.logger.info("Started")

    async def stop(self) -> None:
        """Stop every analyzer; saved configs are kept for the next boot"""
        self._status.update("qan", "Stopping")
        async with self._lock:
            for uuid in list(self.analyzers):
                await self._stop_analyzer(uuid)
        router, self._router = self._router, None
        if router is not None:
            self._router_stop.set()
            await router
        if self._restart_chan is not None:
            self.mrms.global_unsubscribe(self._restart_chan)
            self._restart_chan = None
        self._status.update("qan", "Stopped")
        self.logger.info("Stopped")

    async def handle(self, cmd: Cmd) -> Reply:
        self._status.update_re("qan", "Handling", cmd)
        try:
            if cmd.cmd == "StartService":
                return await self._handle_start(cmd)
            if cmd.cmd == "StopService":
                return await self._handle_stop(cmd)
            if cmd.cmd == "GetConfig":
                configs, errs = self.get_config()
                return cmd.reply(configs, *[AgentError(e) for e in errs])
            if cmd.cmd == "Status":
                return cmd.reply(self.status())
            # To reconfigure an analyzer, stop it and start it with the new config
            return self.unknown_cmd(cmd)
        finally:
            self._status.update("qan", "Running" if self._router is not None else "Stopped")

    async def _handle_start(self, cmd: Cmd) -> Reply:
        try:
            config = Config.from_dict(cmd.data_dict())
        except (ConfigError, ValueError) as e:
            return cmd.reply(None, e)
        async with self._lock:
            if config.uuid in self.analyzers:
                return cmd.reply(None, ServiceIsRunningError(f"qan-{config.uuid}"))
            try:
                await self._start_analyzer(config)
            except AgentError as e:
                return cmd.reply(None, e)
            try:
                self.ctx.basedir.write_config(f"qan-{config.uuid}", config.to_dict())
            except ConfigError as e:
                return cmd.reply(None, e)
        return cmd.reply(None)

    async def _handle_stop(self, cmd: Cmd) -> Reply:
        try:
            uuid = cmd.data_dict().get('uuid')
        except ValueError as e:
            return cmd.reply(None, e)
        if not uuid:
            return cmd.reply(None, InvalidCmdDataError(cmd.cmd, "missing uuid"))
        async with self._lock:
            if uuid not in self.analyzers:
                return cmd.reply(None, ServiceIsNotRunningError(f"qan-{uuid}"))
            errs = []
            try:
                await self._stop_analyzer(uuid)
            except AgentError as e:
                errs.append(e)
            try:
                self.ctx.basedir.remove_config(f"qan-{uuid}")
            except ConfigError as e:
                errs.append(e)
        return cmd.reply(None, *errs)

    def status(self) -> Dict[str, str]:
        return self._status.merge(*[r.analyzer.status() for r in self.analyzers.values()])

    def get_config(self) -> Tuple[List[dict], List[str]]:
        configs = [agent_config("qan", r.config.to_dict(), running=r.analyzer.running, uuid=uuid)
                   for uuid, r in sorted(self.analyzers.items())]
        return configs, []

    # ----------------------------------------------------------------------

    def make_analyzer(self, config: Config, conn, tick_chan: asyncio.Queue,
                      restart_chan: asyncio.Queue) -> Analyzer:
        name = f"qan-{config.uuid}"
        logger = self.logger.create_child(name)
        if config.collect_from == "slowlog":
            iter_conn = self.factory.make(conn.dsn)

            def slow_log_file() -> str:
                iter_conn.connect(1)
                try:
                    return iter_conn.get_global_var("slow_query_log_file") or ""
                finally:
                    iter_conn.close()

            iter = FileIntervalIter(self.logger.create_child(f"{name}-interval"), slow_log_file, tick_chan)
            worker = SlowLogWorker(self.logger.create_child(f"{name}-worker"), config,
                                   self.factory.make(conn.dsn), name=f"{name}-worker")
        else:
            iter = PerfSchemaIntervalIter(self.logger.create_child(f"{name}-interval"), tick_chan)
            worker = PerfSchemaWorker(self.logger.create_child(f"{name}-worker"),
                                      self.factory.make(conn.dsn), name=f"{name}-worker")
        return Analyzer(logger, config, iter, conn, restart_chan, worker, self.clock, self.spool)

    async def _start_analyzer(self, config: Config) -> None:
        """Caller holds self._lock"""
        if config.uuid in self.analyzers:
            raise ServiceIsRunningError(f"qan-{config.uuid}")
        dsn = self.repo.get_mysql_dsn(config.uuid)
        watch_chan = await self.mrms.add(dsn)
        tick_chan: asyncio.Queue = asyncio.Queue(maxsize=1)
        restart_chan: asyncio.Queue = asyncio.Queue(maxsize=1)
        analyzer = self.analyzer_factory(config, self.factory.make(dsn), tick_chan, restart_chan)
        self.clock.add(tick_chan, config.interval)
        analyzer.start()
        self.analyzers[config.uuid] = Running(config, dsn, analyzer, tick_chan, restart_chan, watch_chan)
        self.logger.info(f"Started QAN for MySQL instance {config.uuid} ({config.collect_from})")

    async def _stop_analyzer(self, uuid: str) -> None:
        """Caller holds self._lock"""
        running = self.analyzers.pop(uuid)
        self.clock.remove(running.tick_chan)
        await running.analyzer.stop()
        await self.mrms.remove(running.dsn, running.watch_chan)
        self.logger.info(f"Stopped QAN for MySQL instance {uuid}")

    async def _route_restarts(self) -> None:
        selector = Selector()
        selector.add("restart", self._restart_chan)
        selector.add("stop", self._router_stop)
        try:
            while True:
                event, dsn = await selector.next()
                if event == "stop":
                    return
                for uuid, running in list(self.analyzers.items()):
                    if running.dsn != dsn:
                        continue
                    drain(running.watch_chan)
                    self.logger.info(f"MySQL instance {uuid} restarted, reconfiguring")
                    offer(running.restart_chan, True)
        finally:
            selector.close()
