#!/usr/bin/env python3
#
# Prometheus exporter for Areca controllers
#
# Tested with: ARC-188x
#
# CLI> sys info
# The System Information
# ===========================================
# Main Processor     : 800MHz PPC440
# System Memory      : 1024MB/800MHz/ECC
# Firmware Version   : V1.52 2014-11-07
# BOOT ROM Version   : V1.52 2014-11-07
# Serial Number      : Y912CAAAAR100145
# Controller Name    : ARC-1882
# ===========================================
# GuiErrMsg<0x00>: Success.
#
# CLI> rsf info
#  #  Name             Disks TotalCap  FreeCap DiskChannels       State
# ===============================================================================
#  1  Raid Set # 000       4 8000.0GB    0.0GB 1234               Normal
#  2  Raid Set # 001       2 4000.0GB    0.0GB 56                 Degraded
# ===============================================================================
# GuiErrMsg<0x00>: Success.
#

"""Prometheus exporter for Areca RAID controllers that support the cli64."""

import argparse
import logging
import platform
import re
import signal
import socket
import ssl
import subprocess
import sys
import threading
from dataclasses import astuple, dataclass, fields
from functools import partial
from wsgiref.simple_server import make_server

from prometheus_client import CollectorRegistry, Gauge, make_wsgi_app
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.exposition import ThreadingWSGIServer, _SilentHandler

__version__ = '0.1.0'

logger = logging.getLogger(__name__)

namespace = 'areca'

DEFAULT_CLI_PATH = 'areca.cli64'
DEFAULT_LISTEN_ADDRESS = ':9423'
DEFAULT_TELEMETRY_PATH = '/metrics'

# seconds
CLI_TIMEOUT = 60
POLL_INTERVAL = 5

SYS_INFO_IGNORED_PREFIX = 'guierrmsg'

RAID_SET_NAME_PREFIX = 'Raid Set # '
# The Name column of 'rsf info' is rendered inline as "Raid Set # 000"
RAID_SET_NAME_TOKENS = ('Raid', 'Set', '#')
# The set index is right-aligned in the leftmost columns
raid_set_line_re = re.compile(r"^[ \t]{0,2}[0-9]")

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'
LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}

LANDING_PAGE = """<html>
<head><title>Areca Exporter</title></head>
<body>
<h1>Areca Exporter</h1>
<p>Version: {version}</p>
<p><a href="{telemetry_path}">Metrics</a></p>
</body>
</html>
"""


def run_cli(cli_path, cmd, timeout=CLI_TIMEOUT):
    """Run a single cli64 sub-command and return its raw stdout.

    Nothing is raised: an empty buffer is returned when the utility could not
    be run, and whatever it printed is returned when it exits non-zero.
    """
    try:
        proc = subprocess.run(
            [cli_path, cmd], stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, timeout=timeout
        )
    except subprocess.TimeoutExpired:
        logger.error("%s utility '%s' timed out after %s seconds", cli_path, cmd, timeout)
        return b''
    except OSError as error:
        logger.error("error trying to run %s utility - %s", cli_path, error)
        return b''

    if proc.returncode != 0:
        logger.error("%s utility '%s' returned an exit code of %s", cli_path, cmd, proc.returncode)

    return proc.stdout


def _lines(out):
    return out.decode('utf-8', errors='replace').splitlines()


def parse_sys_info(out):
    """Parse 'sys info' output into a mapping usable as a label set.

    Keys are lowercased with whitespace runs replaced by underscores. The
    trailing GuiErrMsg status line is not controller info and is skipped.
    """
    info = {}
    for line in _lines(out):
        if ': ' not in line:
            continue
        key, value = line.split(': ', 1)
        key = re.sub(r'\s+', '_', key.strip().lower())
        if not key or key.startswith(SYS_INFO_IGNORED_PREFIX):
            continue
        info[key] = value.strip()
    return info


@dataclass(frozen=True)
class RaidSet:
    id: str
    name: str
    disks: str
    total_capacity: str
    free_capacity: str
    disk_channels: str
    state: str


RAID_SET_LABELS = [field.name for field in fields(RaidSet)]


def parse_raid_sets(out):
    """Parse the 'rsf info' table into RaidSet records, in CLI order.

    The header is ignored and columns are bound by position, since the Name
    column contains spaces. Rows with fewer than seven columns are skipped.
    """
    raid_sets = []
    for line in _lines(out):
        if not raid_set_line_re.match(line):
            continue
        columns = [column for column in line.split() if column not in RAID_SET_NAME_TOKENS]
        if len(columns) < 7:
            continue
        rset, _, disks, total_capacity, free_capacity, disk_channels = columns[:6]
        raid_sets.append(RaidSet(
            id=rset,
            name=RAID_SET_NAME_PREFIX + rset,
            disks=disks,
            total_capacity=total_capacity,
            free_capacity=free_capacity,
            disk_channels=disk_channels,
            state=' '.join(columns[6:]),
        ))
    return raid_sets


def raid_set_state(raid_set):
    if raid_set.state == 'Normal':
        return 0
    return 1


def label_name(key):
    """Turn a sys info key into a valid Prometheus label name."""
    name = re.sub(r'[^a-zA-Z0-9_]', '_', key).lstrip('_')
    if not name or name[0].isdigit():
        name = 'key_' + name
    return name


class RaidSetStateCollector:
    """Exposes one areca_raid_set_state sample per raid set of the last poll.

    Every reconcile replaces the whole snapshot, so sets that disappeared or
    changed any of their labels are dropped. A scrape reads the snapshot once
    and never sees a mix of two polls.
    """

    documentation = 'state of a RAID set: 0 normal, 1 abnormal'

    def __init__(self, prefix=namespace):
        self.name = f'{prefix}_raid_set_state'
        self._lock = threading.Lock()
        self._raid_sets = ()

    @property
    def raid_sets(self):
        with self._lock:
            return self._raid_sets

    def reconcile(self, raid_sets):
        # identical rows would produce duplicate series
        snapshot = tuple(dict.fromkeys(raid_sets))
        with self._lock:
            self._raid_sets = snapshot

    def describe(self):
        return [GaugeMetricFamily(self.name, self.documentation, labels=RAID_SET_LABELS)]

    def collect(self):
        family = GaugeMetricFamily(self.name, self.documentation, labels=RAID_SET_LABELS)
        for raid_set in self.raid_sets:
            family.add_metric(astuple(raid_set), raid_set_state(raid_set))
        yield family


class ArecaMetrics:
    """The exporter's metric families, held in one registry."""

    def __init__(self, controller_info, registry=None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.controller_info = dict(controller_info)

        labels = {label_name(key): value for key, value in self.controller_info.items()}
        self.controller = Gauge(
            'controller_info',
            'Constant metric with value 1 labeled with info about the Areca controller.',
            list(labels), namespace=namespace, registry=self.registry,
        )
        if labels:
            self.controller.labels(**labels).set(1)
        else:
            self.controller.set(1)

        self.build_info = Gauge(
            'build_info',
            'A metric with a constant 1 value labeled by version and pythonversion '
            'from which areca_exporter was built.',
            ['version', 'pythonversion'], namespace='areca_exporter', registry=self.registry,
        )
        self.build_info.labels(__version__, platform.python_version()).set(1)

        self.raid_sets = RaidSetStateCollector()
        self.registry.register(self.raid_sets)

    def reconcile(self, raid_sets):
        self.raid_sets.reconcile(raid_sets)


class Poller(threading.Thread):
    """Re-reads 'rsf info' every interval and reconciles the raid set family."""

    def __init__(self, cli, metrics, interval=POLL_INTERVAL):
        super().__init__(name='areca-poller', daemon=True)
        self.cli = cli
        self.metrics = metrics
        self.interval = interval
        self._stopped = threading.Event()

    def poll(self):
        raid_sets = parse_raid_sets(self.cli('rsf info'))
        self.metrics.reconcile(raid_sets)
        logger.debug('collected %d raid sets', len(raid_sets))
        return raid_sets

    def run(self):
        while not self._stopped.is_set():
            try:
                self.poll()
            except Exception:
                logger.exception('raid set poll failed')
                self.metrics.reconcile(())
            self._stopped.wait(self.interval)

    def stop(self):
        self._stopped.set()


def parse_listen_address(address):
    """Split "[host]:port" into (host, port); an empty host binds all interfaces."""
    host, sep, port = address.rpartition(':')
    if not sep:
        raise argparse.ArgumentTypeError(f"invalid listen address '{address}', expected [host]:port")
    try:
        port = int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port in listen address '{address}'")
    return host.strip('[]') or '0.0.0.0', port


def make_app(registry, telemetry_path=DEFAULT_TELEMETRY_PATH):
    metrics_app = make_wsgi_app(registry)
    landing_page = LANDING_PAGE.format(
        version=__version__, telemetry_path=telemetry_path
    ).encode('utf-8')

    def app(environ, start_response):
        path = environ.get('PATH_INFO') or '/'
        if path == telemetry_path:
            return metrics_app(environ, start_response)
        if path == '/':
            start_response('200 OK', [('Content-Type', 'text/html; charset=utf-8')])
            return [landing_page]
        start_response('404 Not Found', [('Content-Type', 'text/plain; charset=utf-8')])
        return [b'404 page not found\n']

    return app


def _get_best_family(address, port):
    """Select the address family matching the listen address."""
    infos = socket.getaddrinfo(address, port)
    family, _, _, _, sockaddr = next(iter(infos))
    return family, sockaddr[0]


def make_exporter_server(app, host, port, certfile=None, keyfile=None):
    class ExporterServer(ThreadingWSGIServer):
        """ThreadingWSGIServer bound to the listen address family"""

    ExporterServer.address_family, addr = _get_best_family(host, port)
    httpd = make_server(addr, port, app, ExporterServer, handler_class=_SilentHandler)
    if certfile and keyfile:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(certfile, keyfile)
        httpd.socket = context.wrap_socket(httpd.socket, server_side=True)
    return httpd


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='areca_exporter', description=__doc__,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version="%(prog)s {0}".format(__version__))
    parser.add_argument(
        "--web.listen-address", dest="listen_address", type=parse_listen_address,
        default=DEFAULT_LISTEN_ADDRESS, help="address on which to expose metrics",
    )
    parser.add_argument(
        "--web.telemetry-path", dest="telemetry_path", default=DEFAULT_TELEMETRY_PATH,
        help="path under which to expose metrics",
    )
    parser.add_argument(
        "--web.tls-cert-file", dest="tls_cert_file", default=None,
        help="TLS certificate file, enables HTTPS together with --web.tls-key-file",
    )
    parser.add_argument(
        "--web.tls-key-file", dest="tls_key_file", default=None,
        help="TLS private key file",
    )
    parser.add_argument(
        "--areca.cli-path", dest="cli_path", default=DEFAULT_CLI_PATH,
        help="path to the Areca cli64 binary",
    )
    parser.add_argument(
        "--log.level", dest="log_level", choices=list(LOG_LEVELS), default="info",
        help="only log messages with the given severity or above",
    )
    args = parser.parse_args(argv)
    if bool(args.tls_cert_file) != bool(args.tls_key_file):
        parser.error("--web.tls-cert-file and --web.tls-key-file must be given together")
    return args


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=LOG_LEVELS[args.log_level], format=LOG_FORMAT)

    cli = partial(run_cli, args.cli_path)
    metrics = ArecaMetrics(parse_sys_info(cli('sys info')))

    host, port = args.listen_address
    logger.info('Starting areca_exporter version=%s', __version__)
    try:
        httpd = make_exporter_server(
            make_app(metrics.registry, args.telemetry_path), host, port,
            certfile=args.tls_cert_file, keyfile=args.tls_key_file,
        )
    except OSError as error:
        logger.error('unable to listen on %s:%s - %s', host, port, error)
        return 1

    poller = Poller(cli, metrics)
    poller.start()

    # shutdown() blocks until serve_forever() returns, so it can't run on this thread
    signal.signal(signal.SIGTERM, lambda signum, frame: threading.Thread(target=httpd.shutdown).start())

    logger.info('Listening on %s:%s', host, port)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info('Caught Control-C...')
    finally:
        poller.stop()
        poller.join()
        httpd.server_close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
