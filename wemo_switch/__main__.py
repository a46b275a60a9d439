#!/usr/bin/env python3

# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import sys
import argparse
import json
import asyncio
import logging
from signal import SIGINT, SIGTERM

from wemo_switch.internal_types import *

from wemo_switch import (
    __version__ as pkg_version,
    DeviceSearch,
    DeviceRecord,
    Switch,
    SwitchState,
    SubscriptionManager,
    Notification,
    DEFAULT_SEARCH_TIMEOUT,
    DEFAULT_CONTROL_TIMEOUT,
  )
from wemo_switch.constants import DEFAULT_CALLBACK_PORT, DEFAULT_SUBSCRIPTION_TTL
from wemo_switch.util import parse_host_and_port

class CmdExitError(RuntimeError):
    exit_code: int

    def __init__(self, exit_code: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Command exited with return code {exit_code}"
        super().__init__(msg)
        self.exit_code = exit_code

class ArgparseExitError(CmdExitError):
    pass

class NoExitArgumentParser(argparse.ArgumentParser):
    def exit(self, status=0, message=None):
        if message:
            self._print_message(message, sys.stderr)
        raise ArgparseExitError(status, message)

def record_summary(record: DeviceRecord) -> JsonableDict:
    return {
        "serial_number": record.serial_number,
        "ip_address": record.ip_address,
        "port": record.port,
        "setup_url": record.setup_url,
    }

class CommandHandler:
    _argv: Optional[Sequence[str]]
    _parser: argparse.ArgumentParser
    _args: argparse.Namespace
    _provide_traceback: bool = True

    def __init__(self, argv: Optional[Sequence[str]]=None):
        self._argv = argv

    async def cmd_bare(self) -> int:
        print("A command is required", file=sys.stderr)
        return 1

    def _get_switch(self) -> Switch:
        ip_address, port = parse_host_and_port(self._args.host)
        if self._args.static:
            return Switch.from_static_ip(ip_address, port=port)
        if port is None:
            # Without a port, only relocation by IP can find the device
            return Switch.from_static_ip(ip_address)
        return Switch.from_ip_and_port(ip_address, port)

    def _print_state(self, switch: Switch, state: SwitchState) -> None:
        if self._args.json:
            print(json.dumps({"host": switch.base_url(), "code": state.code, "state": state.description, "is_on": state.is_on()}))
        else:
            print(f"{switch}: {state.description}")

    async def cmd_search(self) -> int:
        wait_time: float = self._args.wait_time
        search = DeviceSearch(bind_address=self._args.bind)
        records: List[DeviceRecord]
        if self._args.serial is not None:
            record = await search.search_for_serial(self._args.serial, wait_time)
            records = [] if record is None else [record]
        elif self._args.ip is not None:
            record = await search.search_for_ip(self._args.ip, wait_time)
            records = [] if record is None else [record]
        else:
            records = list((await search.search(wait_time)).values())
        for record in records:
            if self._args.json:
                print(json.dumps(record_summary(record), indent=2, sort_keys=True))
            else:
                print(f"{record.serial_number}  {record.ip_address}:{record.port}  {record.setup_url}")
            sys.stdout.flush()
        if len(records) == 0 and (self._args.serial is not None or self._args.ip is not None):
            print("Device not found", file=sys.stderr)
            return 1
        return 0

    async def cmd_state(self) -> int:
        switch = self._get_switch()
        timeout: float = self._args.timeout
        if self._args.retry:
            state = await switch.get_state_with_retry(timeout)
        else:
            state = await switch.get_state(timeout)
        self._print_state(switch, state)
        return 0

    async def cmd_on(self) -> int:
        switch = self._get_switch()
        timeout: float = self._args.timeout
        state = await (switch.turn_on_with_retry(timeout) if self._args.retry else switch.turn_on(timeout))
        self._print_state(switch, state)
        return 0

    async def cmd_off(self) -> int:
        switch = self._get_switch()
        timeout: float = self._args.timeout
        state = await (switch.turn_off_with_retry(timeout) if self._args.retry else switch.turn_off(timeout))
        self._print_state(switch, state)
        return 0

    async def cmd_toggle(self) -> int:
        switch = self._get_switch()
        timeout: float = self._args.timeout
        state = await (switch.toggle_with_retry(timeout) if self._args.retry else switch.toggle(timeout))
        self._print_state(switch, state)
        return 0

    async def cmd_watch(self) -> int:
        def on_notification(notification: Notification) -> None:
            print(f"{notification.subscription_key}: {notification.state.description}")
            sys.stdout.flush()

        subs = SubscriptionManager(callback_port=self._args.port, subscription_ttl=self._args.ttl, listen_address=self._args.bind)
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signal in (SIGINT, SIGTERM):
            loop.add_signal_handler(signal, stop_event.set)
        try:
            async with subs:
                print("Searching for devices to subscribe to...", file=sys.stderr)
                search = DeviceSearch(bind_address=self._args.bind)
                results = await search.search(self._args.wait_time)
                failures = await subs.subscribe_all(results.values(), on_notification)
                for host_key, error in failures.items():
                    if error is None:
                        print(f"> Subscribed to: {host_key}", file=sys.stderr)
                    else:
                        print(f"> Unable to subscribe to {host_key}: {error}", file=sys.stderr)
                await stop_event.wait()
        finally:
            for signal in (SIGINT, SIGTERM):
                loop.remove_signal_handler(signal)
        return 0

    async def cmd_version(self) -> int:
        print(pkg_version)
        return 0

    async def arun(self) -> int:
        """Run the wemo command-line tool with provided arguments

        Args:
            argv (Optional[Sequence[str]], optional):
                A list of commandline arguments (NOT including the program as argv[0]!),
                or None to use sys.argv[1:]. Defaults to None.

        Returns:
            int: The exit code that would be returned if this were run as a standalone command.
        """
        parser = NoExitArgumentParser(prog="wemo", description="Discover, control and monitor WeMo switches.")


        # ======================= Main command

        self._parser = parser
        parser.add_argument('--traceback', "--tb", action='store_true', default=False,
                            help='Display detailed exception information')
        parser.add_argument('--log-level', dest='log_level', default='warning',
                            choices=['debug', 'info', 'warning', 'error', 'critical'],
                            help='''The logging level to use. Default: warning''')
        parser.add_argument('--json', action='store_true', default=False,
                            help='Output results as JSON')
        parser.set_defaults(func=self.cmd_bare)

        subparsers = parser.add_subparsers(
                            title='Commands',
                            description='Valid commands',
                            help='Additional help available with "<command-name> -h"')


        # ======================= search

        parser_search = subparsers.add_parser('search', description="Search for WeMo devices")
        parser_search.add_argument('--wait-time', dest='wait_time', type=float, default=DEFAULT_SEARCH_TIMEOUT,
                            help=f'''The amount of time to wait for responses, in seconds. Default: {DEFAULT_SEARCH_TIMEOUT}''')
        target_group = parser_search.add_mutually_exclusive_group()
        target_group.add_argument('--serial', default=None,
                            help='''Stop as soon as the device with this serial number is found''')
        target_group.add_argument('--ip', default=None,
                            help='''Stop as soon as the device with this IP address is found''')
        parser_search.add_argument('--bind', default="0.0.0.0",
                            help='''The local address to send search requests from. Default: 0.0.0.0''')
        parser_search.set_defaults(func=self.cmd_search)

        # ======================= state, on, off, toggle

        for name, func, description in (
                ('state', self.cmd_state, "Print the state of a device"),
                ('on', self.cmd_on, "Turn a device on"),
                ('off', self.cmd_off, "Turn a device off"),
                ('toggle', self.cmd_toggle, "Toggle a device on or off"),
              ):
            parser_control = subparsers.add_parser(name, description=description)
            parser_control.add_argument('host',
                                help='''The device address, as <ip> or <ip>:<port>''')
            parser_control.add_argument('--timeout', type=float, default=DEFAULT_CONTROL_TIMEOUT,
                                help=f'''The total time budget, in seconds. Default: {DEFAULT_CONTROL_TIMEOUT}''')
            parser_control.add_argument('--retry', action='store_true', default=False,
                                help='''If the device does not answer, relocate it via SSDP and try again''')
            parser_control.add_argument('--static', action='store_true', default=False,
                                help='''The device has a static IP address; relocation may only change its port''')
            parser_control.set_defaults(func=func)

        # ======================= watch

        parser_watch = subparsers.add_parser('watch', description="Subscribe to all devices and print state changes")
        parser_watch.add_argument('--port', type=int, default=DEFAULT_CALLBACK_PORT,
                            help=f'''The local port for device callbacks. Default: {DEFAULT_CALLBACK_PORT}''')
        parser_watch.add_argument('--ttl', type=int, default=DEFAULT_SUBSCRIPTION_TTL,
                            help=f'''The subscription TTL, in seconds. Default: {DEFAULT_SUBSCRIPTION_TTL}''')
        parser_watch.add_argument('--wait-time', dest='wait_time', type=float, default=DEFAULT_SEARCH_TIMEOUT,
                            help=f'''The amount of time to search for devices, in seconds. Default: {DEFAULT_SEARCH_TIMEOUT}''')
        parser_watch.add_argument('--bind', default="0.0.0.0",
                            help='''The local address to search from and listen for callbacks on. Default: 0.0.0.0''')
        parser_watch.set_defaults(func=self.cmd_watch)

        # ======================= version

        parser_version = subparsers.add_parser('version',
                                description='''Display version information.''')
        parser_version.set_defaults(func=self.cmd_version)

        # =========================================================

        try:
            args = parser.parse_args(self._argv)
        except ArgparseExitError as ex:
            return ex.exit_code
        traceback: bool = args.traceback
        self._provide_traceback = traceback

        try:
            logging.basicConfig(
                level=logging.getLevelName(args.log_level.upper()),
            )
            self._args = args
            func: Callable[[], Awaitable[int]] = args.func
            logging.debug(f"Running command {func.__name__}, tb = {traceback}")
            rc = await func()
            logging.debug(f"Command {func.__name__} returned {rc}")
        except Exception as ex:
            if isinstance(ex, CmdExitError):
                rc = ex.exit_code
            else:
                rc = 1
            if rc != 0:
                if traceback:
                    raise
            print(f"wemo: error: {ex}", file=sys.stderr)
        except BaseException as ex:
            print(f"wemo: Unhandled exception: {ex}", file=sys.stderr)
            raise

        return rc

    def run(self) -> int:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            rc = loop.run_until_complete(self.arun())
        finally:
            loop.close()
        return rc

def run(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = CommandHandler(argv).run()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

async def arun(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = await CommandHandler(argv).arun()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

def main() -> None:
    sys.exit(run())

# allow running with "python3 -m", or as a standalone script
if __name__ == "__main__":
    main()
