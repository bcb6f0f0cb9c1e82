#!/usr/bin/env python3
"""
DB Agent - entry point

Runs the agent: loads config/agent.conf from the base directory, starts the
log, data, mrms, instance and qan services and serves commands from the
management service until stopped.

Signals:
    SIGUSR1  print status as JSON
    SIGHUP   reconnect the control link
    SIGINT, SIGTERM  stop gracefully
"""

import argparse
import asyncio
import json
import signal
import sys

from dbagent import VERSION
from dbagent.agent import Agent, Restarter, wait_for_start_lock
from dbagent.api_client import APIClient
from dbagent.config import Basedir, Context, default_basedir, load_config
from dbagent.data import Manager as DataManager
from dbagent.database import ConnectionFactory
from dbagent.errors import AgentError, ConfigError, PidFileError
from dbagent.instance import Manager as InstanceManager
from dbagent.instance import Repo
from dbagent.log import Manager as LogManager
from dbagent.logger import LogChannel, console, setup_logger
from dbagent.mrms import Manager as MrmsManager
from dbagent.mrms import Monitor
from dbagent.pidfile import PidFile
from dbagent.proto import AgentJSONEncoder
from dbagent.qan import Manager as QanManager
from dbagent.ticker import Clock
from dbagent.websocket_client import WebsocketClient


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='DB Agent')
    parser.add_argument('-basedir', help='Agent base directory', default=default_basedir())
    parser.add_argument('-pidfile', help='PID file, relative to basedir unless absolute', default=None)
    parser.add_argument('-ping', action='store_true', help='Ping the API and exit')
    parser.add_argument('-status', action='store_true', help='Print agent status from the API and exit')
    parser.add_argument('-version', action='store_true', help='Print version and exit')
    parser.add_argument('-debug', action='store_true', help='Enable debug logging')
    return parser.parse_args(argv)


async def run_agent(basedir: Basedir, config: dict, args: argparse.Namespace) -> int:
    log_chan = LogChannel()
    ctx = Context(basedir=basedir, config=config, log_chan=log_chan)
    logger = setup_logger(log_chan, ctx.debug)

    # Wait for the agent that restarted us before touching its PID file
    wait_for_start_lock(logger, basedir)

    pidfile = PidFile(basedir.path)
    try:
        pidfile.set(args.pidfile if args.pidfile is not None else config.get('pidfile', ''))
    except PidFileError as e:
        logger.critical(str(e))
        return 1

    log_chan.bind()
    links = config['links']
    api = APIClient(links, config['api_key'], VERSION, logger.create_child("api"))
    cmd_client = WebsocketClient(links['cmd'], config['api_key'], VERSION,
                                 logger.create_child("agent-ws"), name="agent-ws", hello=True)
    log_client = WebsocketClient(links['log'], config['api_key'], VERSION,
                                 logger.create_child("log-ws"), name="log-ws")

    clock = Clock()
    factory = ConnectionFactory(logger)
    monitor = Monitor(logger.create_child("mrms-monitor"), factory)
    repo = Repo(logger.create_child("instance-repo"), basedir)
    data = DataManager(ctx, api, clock, logger.create_child("data"))
    services = {
        'log': LogManager(ctx, log_client, logger.create_child("log")),
        'data': data,
        'mrms': MrmsManager(logger.create_child("mrms"), monitor),
        'instance': InstanceManager(logger.create_child("instance"), repo),
        'qan': QanManager(ctx, logger.create_child("qan"), clock, data, monitor, factory, repo),
    }
    restarter = Restarter(logger.create_child("agent-restart"), basedir, sys.argv[1:])
    agent = Agent(ctx, logger, cmd_client, services, restarter)

    loop = asyncio.get_running_loop()

    def print_status():
        console(json.dumps(agent.status(), cls=AgentJSONEncoder, indent=4, sort_keys=True))

    def shutdown(signame):
        logger.info(f"Caught {signame}, stopping agent", always=True)
        agent.stop(f"caught {signame}")

    loop.add_signal_handler(signal.SIGUSR1, print_status)
    loop.add_signal_handler(signal.SIGHUP, lambda: asyncio.ensure_future(agent.reconnect()))
    loop.add_signal_handler(signal.SIGINT, shutdown, "SIGINT")
    loop.add_signal_handler(signal.SIGTERM, shutdown, "SIGTERM")

    logger.info(f"DB Agent {VERSION} starting, basedir {basedir.path}", always=True)
    try:
        await agent.start_services()
        reason = await agent.run()
        logger.info(f"Agent stopped: {reason}", always=True)
    finally:
        await clock.stop()
        log_chan.unbind()
        try:
            pidfile.remove()
        except PidFileError as e:
            console(f"Warning: {e}")
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.version:
        console(f"DB Agent {VERSION}")
        return 0

    basedir = Basedir(args.basedir)
    try:
        basedir.init()
        config = load_config(basedir)
    except ConfigError as e:
        console(f"Error: {e}")
        return 1
    if args.debug:
        config['debug'] = True

    if args.ping or args.status:
        logger = setup_logger(debug=config['debug'])
        api = APIClient(config['links'], config['api_key'], VERSION, logger)
        if args.ping:
            ok, message = api.ping()
            console(message)
            return 0 if ok else 1
        try:
            status = api.get_status()
        except (OSError, RuntimeError, ValueError) as e:
            console(f"Error getting status: {e}")
            return 1
        console(json.dumps(status, indent=4, sort_keys=True))
        return 0

    try:
        return asyncio.run(run_agent(basedir, config, args))
    except AgentError as e:
        console(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == '__main__':
    sys.exit(main())
