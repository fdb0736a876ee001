from pathlib import Path
from socket import *

import typer
from loguru import logger

from .config import DEFAULT_CONFIG, DEFAULT_RECORDS, ConfigError, loadConfig
from .log import configureLogging
from .message import Message, encode
from .records import RecordFileError, RecordStore, loadRecords
from .session import EXPECTED_QUERIES, SessionMachine

BUFFER_SIZE = 2048 # buffer size for receiving UDP datagrams

# UDP listener feeding datagrams into the session state machine, one at a time
class DNSServer:
    def __init__(self, address: tuple[str, int], machine: SessionMachine, timeout: float | None = None):
        self.address = address # (IP, port) to bind to
        self.machine = machine
        self.timeout = timeout # receive timeout (None = wait forever); an active session is dropped when it expires
        if timeout is not None: self.machine.timeout = timeout # the bound client gets the same allowance between its datagrams
        self.sock: socket | None = None

    def __enter__(self):
        self.bind()
        return self

    def __exit__(self, *exc):
        self.close()

    def bind(self):
        self.sock = socket(AF_INET, SOCK_DGRAM)
        try:
            self.sock.bind(self.address)
        except OSError:
            self.sock.close()
            self.sock = None
            raise
        self.sock.settimeout(self.timeout)
        self.address = self.sock.getsockname() # pick up the real port if we were given port 0
        logger.info('DNS server is active on {}:{}', *self.address)

    def close(self):
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def send(self, msg: Message, clientAddr: tuple[str, int]):
        self.sock.sendto(encode(msg), clientAddr)
        logger.info('Sent {} to {}', msg, clientAddr)

    # receive and process a single datagram (or a timeout)
    def serveOnce(self):
        try:
            data, clientAddr = self.sock.recvfrom(BUFFER_SIZE)
        except TimeoutError:
            self.machine.expire() # no-op if nobody is connected
            return
        except OSError as e:
            logger.error('Socket error while receiving: {}', e)
            self.machine.abandon(str(e))
            return

        self.machine.expireStale() # a silent client loses its session even while others keep sending
        logger.debug('Received {} bytes from {}: {!r}', len(data), clientAddr, data)
        for msg in self.machine.handle(data, clientAddr):
            try:
                self.send(msg, clientAddr)
            except OSError as e:
                logger.error('Socket error while sending to {}: {}', clientAddr, e)
                self.machine.abandon(str(e))
                break

    def serveForever(self):
        while True:
            self.serveOnce()

app = typer.Typer(name='dnssession-server', help='UDP DNS lookup server.', add_completion=False)

@app.command()
def main(
        config: Path = typer.Option(DEFAULT_CONFIG, '--config', '-c', help='Settings file (ServerIP/ServerPort)'),
        records: Path = typer.Option(DEFAULT_RECORDS, '--records', '-r', help='DNS records file'),
        timeout: float | None = typer.Option(None, '--timeout', '-t', help='Drop an unresponsive client after this many seconds'),
        queries: int = typer.Option(EXPECTED_QUERIES, '--queries', '-q', min=1, help='Lookups per session'),
        logLevel: str | None = typer.Option(None, '--log-level', help='Log level (default: $DNSSESSION_LOG_LEVEL or INFO)')
):
    configureLogging('server', logLevel)

    try:
        settings = loadConfig(config)
        store: RecordStore = loadRecords(records)
    except (ConfigError, RecordFileError) as e:
        logger.error('Cannot start server: {}', e)
        raise typer.Exit(1)

    try:
        server = DNSServer(settings.serverAddress, SessionMachine(store, queries), timeout)
        server.bind()
    except OSError as e:
        logger.error('Cannot bind to {}:{}: {}', settings.serverIP, settings.serverPort, e)
        raise typer.Exit(1)

    try:
        server.serveForever()
    except KeyboardInterrupt:
        logger.info('Shutting down')
    finally:
        server.close()

if __name__ == '__main__':
    app()
