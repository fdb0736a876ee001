from __future__ import annotations

import json
import threading
import time
from socket import AF_INET, SOCK_DGRAM, socket
from typing import Callable

import pytest

from dnssession.client import ClientDriver, ClientError, ProtocolError, defaultQueries
from dnssession.message import Message, MessageType, QueryDescriptor, decode, encode
from dnssession.records import Record, RecordStore
from dnssession.server import DNSServer
from dnssession.session import SessionMachine, State

HELLO = encode(Message.text(MessageType.Hello, 1, 'Hello from client'))


@pytest.fixture
def server(records: RecordStore, newId: Callable[[], int]):
    with DNSServer(('127.0.0.1', 0), SessionMachine(records, newId=newId), timeout=5.0) as server:
        yield server


@pytest.fixture
def peer():
    sock = socket(AF_INET, SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


def _serve(server: DNSServer, count: int) -> threading.Thread:
    thread = threading.Thread(target=lambda: [server.serveOnce() for _ in range(count)], daemon=True)
    thread.start()
    return thread


def test_default_queries_mix_valid_and_malformed(records: RecordStore) -> None:
    queries = defaultQueries(records)

    assert [query.wellFormed for query in queries] == [False, True, False, True]
    assert queries[1] == QueryDescriptor('A', 'www.example.com')
    assert queries[3] == QueryDescriptor('MX', 'example.com')


def test_default_queries_without_records() -> None:
    queries = defaultQueries(RecordStore())

    assert queries[1] == QueryDescriptor('A', 'example.com')
    assert queries[3] == QueryDescriptor('A', 'example.net')


def test_full_session_over_loopback(server: DNSServer, records: RecordStore) -> None:
    thread = _serve(server, 7) # Hello + 4 lookups + 2 Acks

    transcript = ClientDriver(server.address, timeout=5.0).run(defaultQueries(records))
    thread.join(5.0)

    assert transcript.welcome.content == 'Welcome from server'
    assert [msg.msgType for msg in transcript.responses] == [
        MessageType.Error,
        MessageType.DNSLookupReply,
        MessageType.Error,
        MessageType.DNSLookupReply,
    ]
    assert [msg.content.value for msg in transcript.replies] == ['93.184.216.34', 'mail.example.com']
    assert transcript.end.msgType == MessageType.End
    assert server.machine.state == State.Idle


def test_second_client_is_ignored(server: DNSServer, peer: socket) -> None:
    with socket(AF_INET, SOCK_DGRAM) as intruder:
        intruder.bind(('127.0.0.1', 0))
        intruder.settimeout(0.3)

        peer.sendto(HELLO, server.address)
        server.serveOnce()
        assert decode(peer.recvfrom(2048)[0]).msgType == MessageType.Welcome

        intruder.sendto(HELLO, server.address)
        server.serveOnce()
        with pytest.raises(TimeoutError):
            intruder.recvfrom(2048)

    assert server.machine.session.clientAddress == peer.getsockname()
    assert server.machine.state == State.AwaitingQuery


def test_garbage_during_session_gets_error(server: DNSServer, peer: socket) -> None:
    peer.sendto(HELLO, server.address)
    server.serveOnce()
    peer.recvfrom(2048)

    peer.sendto(b'this is not json', server.address)
    server.serveOnce()

    reply = json.loads(peer.recvfrom(2048)[0])
    assert reply['MsgType'] == 'Error'
    assert reply['Content'] == 'Invalid message format'


def test_receive_timeout_drops_session(records: RecordStore, peer: socket) -> None:
    with DNSServer(('127.0.0.1', 0), SessionMachine(records), timeout=0.2) as server:
        peer.sendto(HELLO, server.address)
        server.serveOnce()
        assert server.machine.active

        server.serveOnce() # nothing arrives

        assert not server.machine.active


def test_client_times_out_without_server(peer: socket) -> None:
    driver = ClientDriver(peer.getsockname(), timeout=0.2)

    with pytest.raises(ClientError, match='no response'):
        driver.run([QueryDescriptor('A', 'www.example.com')])


def _fakeServer(peer: socket, responses: list[Callable[[Message], Message]]) -> threading.Thread:
    def run():
        for respond in responses:
            data, addr = peer.recvfrom(2048)
            peer.sendto(encode(respond(decode(data))), addr)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def test_client_requires_welcome(peer: socket) -> None:
    thread = _fakeServer(peer, [lambda msg: Message.text(MessageType.Error, 5, 'go away')])

    with pytest.raises(ProtocolError, match='expected Welcome'):
        ClientDriver(peer.getsockname(), timeout=2.0).run([])
    thread.join(2.0)


def test_client_rejects_early_end(peer: socket) -> None:
    thread = _fakeServer(peer, [
        lambda msg: Message.text(MessageType.Welcome, 5, 'hi'),
        lambda msg: Message.text(MessageType.End, 6, 'bye'),
    ])

    with pytest.raises(ProtocolError, match='unexpected End'):
        ClientDriver(peer.getsockname(), timeout=2.0).run([QueryDescriptor('A', 'www.example.com')])
    thread.join(2.0)


def test_client_rejects_uncorrelated_reply(peer: socket) -> None:
    thread = _fakeServer(peer, [
        lambda msg: Message.text(MessageType.Welcome, 5, 'hi'),
        lambda msg: Message.reply(msg.id + 1, Record('A', 'www.example.com', '93.184.216.34', 3600)),
    ])

    with pytest.raises(ProtocolError, match='does not answer'):
        ClientDriver(peer.getsockname(), timeout=2.0).run([QueryDescriptor('A', 'www.example.com')])
    thread.join(2.0)


def test_noise_from_others_does_not_keep_silent_client_session(records: RecordStore, peer: socket) -> None:
    with DNSServer(('127.0.0.1', 0), SessionMachine(records), timeout=0.3) as server, socket(AF_INET, SOCK_DGRAM) as noisy:
        peer.sendto(HELLO, server.address)
        server.serveOnce()
        assert server.machine.active

        deadline = time.monotonic() + 1.0
        while time.monotonic() < deadline and server.machine.active:
            noisy.sendto(b'noise', server.address)
            time.sleep(0.1)
            server.serveOnce()

        assert not server.machine.active


def test_client_accepts_replies_for_unspecified_server_address() -> None:
    driver = ClientDriver(('0.0.0.0', 10053))

    assert driver.fromServer(('127.0.0.1', 10053))
    assert not driver.fromServer(('127.0.0.1', 10054))


def test_client_matches_exact_server_address() -> None:
    driver = ClientDriver(('127.0.0.1', 10053))

    assert driver.fromServer(('127.0.0.1', 10053))
    assert not driver.fromServer(('127.0.0.2', 10053))
    assert not driver.fromServer(('127.0.0.1', 10054))
