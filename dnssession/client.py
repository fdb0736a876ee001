from dataclasses import dataclass, field
from pathlib import Path
from random import randint
from socket import *

import typer
from loguru import logger

from .config import DEFAULT_CONFIG, DEFAULT_RECORDS, Config, ConfigError, loadConfig
from .log import configureLogging
from .message import DecodeError, Message, MessageType, QueryDescriptor, decode, encode
from .records import Record, RecordFileError, RecordStore, loadRecords

BUFFER_SIZE = 2048 # buffer size for receiving UDP datagrams
CLIENT_TIMEOUT = 5.0 # seconds to wait for each response - we don't retransmit, so a lost datagram ends the session

# fatal client failure (timeout, socket error, garbage from the server)
class ClientError(Exception):
    pass

# the server sent a message we did not expect at this point
class ProtocolError(ClientError):
    pass

# everything the server sent us during a session
@dataclass
class SessionTranscript:
    welcome: Message | None = None
    responses: list[Message] = field(default_factory=list) # one per query: DNSLookupReply or Error
    end: Message | None = None

    @property
    def replies(self) -> list[Message]:
        return [msg for msg in self.responses if msg.msgType == MessageType.DNSLookupReply]

    @property
    def errors(self) -> list[Message]:
        return [msg for msg in self.responses if msg.msgType == MessageType.Error]

# build the fixed query set: two that should resolve, interleaved with two malformed ones
def defaultQueries(records: RecordStore) -> list[QueryDescriptor]:
    records = list(records)
    first = records[0] if len(records) > 0 else Record('A', 'example.com', '')
    second = next((r for r in records if r.recordType.lower() != first.recordType.lower()), None) # prefer a different record type
    if second is None: second = records[1] if len(records) > 1 else Record('A', 'example.net', '')

    return [
        QueryDescriptor(None, 'unknown.domain', bare=True), # name only, no type
        QueryDescriptor(first.recordType, first.name),
        QueryDescriptor('A', None), # type without name
        QueryDescriptor(second.recordType, second.name)
    ]

# client side of the session: handshake, then one lookup at a time
class ClientDriver:
    def __init__(self, serverAddress: tuple[str, int], bindAddress: tuple[str, int] | None = None, timeout: float = CLIENT_TIMEOUT):
        self.serverAddress = serverAddress
        self.bindAddress = bindAddress # None = ephemeral port on all interfaces
        self.timeout = timeout

    def newId(self) -> int:
        return randint(1, 9999)

    # with an unspecified server IP (0.0.0.0) replies come from a concrete local address, so only the port is checked
    def fromServer(self, addr: tuple[str, int]) -> bool:
        if self.serverAddress[0] == '0.0.0.0': return addr[1] == self.serverAddress[1]
        return addr == self.serverAddress

    def send(self, sock: socket, msg: Message):
        try:
            sock.sendto(encode(msg), self.serverAddress)
        except OSError as e:
            raise ClientError(f'failed to send {msg.msgType.value}: {e}') from e
        logger.info('Sent {}', msg)

    # block for the next message from the server
    def receive(self, sock: socket) -> Message:
        while True:
            try:
                data, addr = sock.recvfrom(BUFFER_SIZE)
            except TimeoutError:
                raise ClientError(f'no response from server within {self.timeout:.1f} sec') from None
            except OSError as e:
                raise ClientError(f'socket error while receiving: {e}') from e

            if not self.fromServer(addr):
                logger.warning('Ignoring datagram from {}', addr) # not our server
                continue

            try:
                msg = decode(data)
            except DecodeError as e:
                raise ClientError(f'invalid message from server: {e}') from e
            logger.info('Received {}', msg)
            return msg

    def expect(self, sock: socket, msgType: MessageType) -> Message:
        msg = self.receive(sock)
        if msg.msgType != msgType:
            raise ProtocolError(f'expected {msgType.value}, but got {msg.msgType.value}')
        return msg

    # perform a whole session, returning what the server sent back
    def run(self, queries: list[QueryDescriptor]) -> SessionTranscript:
        transcript = SessionTranscript()

        with socket(AF_INET, SOCK_DGRAM) as sock:
            sock.settimeout(self.timeout)
            if self.bindAddress is not None:
                try:
                    sock.bind(self.bindAddress)
                except OSError as e:
                    raise ClientError(f'cannot bind to {self.bindAddress[0]}:{self.bindAddress[1]}: {e}') from e
                logger.info('Socket bound to {}:{}', *sock.getsockname())

            # handshake
            self.send(sock, Message.text(MessageType.Hello, self.newId(), 'Hello from client'))
            transcript.welcome = self.expect(sock, MessageType.Welcome)

            for query in queries:
                request = Message(self.newId(), MessageType.DNSLookup, query)
                self.send(sock, request)

                response = self.receive(sock)
                if response.msgType == MessageType.DNSLookupReply:
                    if response.id != request.id:
                        raise ProtocolError(f'reply {response.id} does not answer lookup {request.id}')
                    logger.info('{} -> {}', query, response.content.value)
                    self.send(sock, Message.ack(self.newId(), response.id)) # Ack carries the reply's ID
                elif response.msgType == MessageType.Error:
                    logger.info('{} -> error: {}', query, response.content) # no Ack for errors
                else: # End included - the server shouldn't finish before we're done
                    raise ProtocolError(f'unexpected {response.msgType.value} in response to DNSLookup')
                transcript.responses.append(response)

            transcript.end = self.expect(sock, MessageType.End)

        return transcript

app = typer.Typer(name='dnssession-client', help='UDP DNS lookup client.', add_completion=False)

@app.command()
def main(
        config: Path = typer.Option(DEFAULT_CONFIG, '--config', '-c', help='Settings file (ServerIP/ServerPort, optional ClientIP/ClientPort)'),
        records: Path = typer.Option(DEFAULT_RECORDS, '--records', '-r', help='DNS records file to pick valid queries from'),
        timeout: float = typer.Option(CLIENT_TIMEOUT, '--timeout', '-t', min=0.1, help='Seconds to wait for each response'),
        logLevel: str | None = typer.Option(None, '--log-level', help='Log level (default: $DNSSESSION_LOG_LEVEL or INFO)')
):
    configureLogging('client', logLevel)

    try:
        settings: Config = loadConfig(config)
        store = loadRecords(records)
    except (ConfigError, RecordFileError) as e:
        logger.error('Cannot start client: {}', e)
        raise typer.Exit(1)

    driver = ClientDriver(settings.serverAddress, settings.clientAddress, timeout)
    try:
        transcript = driver.run(defaultQueries(store))
    except ClientError as e:
        logger.error('Session failed: {}', e)
        raise typer.Exit(1)

    logger.info('Session finished: {} replies, {} errors', len(transcript.replies), len(transcript.errors))

if __name__ == '__main__':
    app()
