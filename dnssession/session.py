"""Session state machine for the DNS lookup protocol.

UDP gives us no connection, so everything that makes the exchange a
conversation lives here: which client is active, which message kinds are
acceptable next, how many lookups have been handled, and when to send End.

`transition` is a pure function over an immutable `Session` (None when idle);
`SessionMachine` owns the current session and feeds datagrams through it.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from random import randint
from time import monotonic
from typing import Callable

from loguru import logger

from .message import DecodeError, Message, MessageType, decode
from .records import RecordStore

EXPECTED_QUERIES = 4 # number of lookups a client gets before we end the session

WELCOME_TEXT = 'Welcome from server'
END_TEXT = 'End of DNSLookup'

# error texts sent back to the client
ERR_INVALID_MESSAGE = 'Invalid message format'
ERR_INVALID_LOOKUP = 'Invalid DNSLookup format'
ERR_NOT_FOUND = 'Domain not found'
ERR_ACK_EXPECTED = 'Ack expected, not DNSLookup'
ERR_UNEXPECTED_ACK = 'Unexpected Ack, no reply pending'
ERR_ACK_MISMATCH = 'Ack does not match pending reply'
ERR_ALREADY_IN_SESSION = 'Already in session'
ERR_UNEXPECTED_TYPE = 'Unexpected message type'

Address = tuple[str, int] # (IP address, port) as returned by recvfrom

class State(Enum):
    Idle = 'Idle' # no active client
    AwaitingQuery = 'AwaitingQuery' # handshake done, ready for the next DNSLookup
    AwaitingAck = 'AwaitingAck' # a reply was sent, waiting for its Ack

@dataclass(frozen=True)
class Session:
    clientAddress: Address # the only sender we listen to while the session is active
    state: State = State.AwaitingQuery
    queriesHandled: int = 0
    expectedQueries: int = EXPECTED_QUERIES
    awaitingAckFor: int | None = None # ID of the reply we're waiting an Ack for

    @property
    def complete(self) -> bool:
        return self.queriesHandled >= self.expectedQueries

@dataclass(frozen=True)
class Transition:
    session: Session | None # None once the session is closed (or was never opened)
    outgoing: list[Message] = field(default_factory=list) # messages to send to the client, in order
    closed: bool = False # set if this transition tore down an active session

    @property
    def state(self) -> State:
        return self.session.state if self.session is not None else State.Idle

def defaultMessageId() -> int:
    return randint(1, 999999)

# close the session after sending a protocol error
def _violation(session: Session, reason: str, newId: Callable[[], int]) -> Transition:
    logger.warning('Protocol violation from {}: {} - closing session', session.clientAddress, reason)
    return Transition(None, [Message.text(MessageType.Error, newId(), reason)], closed=True)

# finish an exchange: either end the session or go back to waiting for the next query
def _exchangeDone(session: Session, outgoing: list[Message], newId: Callable[[], int]) -> Transition:
    session = replace(session, state=State.AwaitingQuery, awaitingAckFor=None)
    if session.complete:
        logger.info('Session with {} complete after {} queries', session.clientAddress, session.queriesHandled)
        return Transition(None, outgoing + [Message.text(MessageType.End, newId(), END_TEXT)], closed=True)
    return Transition(session, outgoing)

def _handleLookup(session: Session, msg: Message, records: RecordStore, newId: Callable[[], int]) -> Transition:
    session = replace(session, queriesHandled=session.queriesHandled + 1) # errors count towards the limit too
    query = msg.content

    if query.bare: # bare names are never resolved
        logger.info('Name-only DNSLookup (MsgId={}) from {}: {} -> NOT FOUND', msg.id, session.clientAddress, query)
        return _exchangeDone(session, [Message.text(MessageType.Error, newId(), ERR_NOT_FOUND)], newId)

    if not query.wellFormed:
        logger.info('Malformed DNSLookup (MsgId={}) from {}: {}', msg.id, session.clientAddress, query)
        return _exchangeDone(session, [Message.text(MessageType.Error, newId(), ERR_INVALID_LOOKUP)], newId)

    record = records.resolve(query.recordType, query.name)
    if record is None:
        logger.info('DNSLookup (MsgId={}) from {}: {} -> NOT FOUND', msg.id, session.clientAddress, query)
        return _exchangeDone(session, [Message.text(MessageType.Error, newId(), ERR_NOT_FOUND)], newId)

    # the reply reuses the query's ID; the client Acks that ID
    logger.info('DNSLookup (MsgId={}) from {}: {} -> {}', msg.id, session.clientAddress, query, record.value)
    session = replace(session, state=State.AwaitingAck, awaitingAckFor=msg.id)
    return Transition(session, [Message.reply(msg.id, record)])

def _handleAck(session: Session, msg: Message, newId: Callable[[], int]) -> Transition:
    if msg.content.msgId != session.awaitingAckFor:
        return _violation(session, ERR_ACK_MISMATCH, newId)

    logger.info('Ack (MsgId={}) from {} for reply {}', msg.id, session.clientAddress, msg.content.msgId)
    return _exchangeDone(session, [], newId)

# process one incoming message (or decode failure) from sender against the current session
def transition(
        session: Session | None,
        incoming: Message | DecodeError,
        sender: Address,
        records: RecordStore,
        expectedQueries: int = EXPECTED_QUERIES,
        newId: Callable[[], int] = defaultMessageId
) -> Transition:
    if session is None: # idle - only a Hello can start a session
        if isinstance(incoming, DecodeError):
            logger.debug('Ignoring undecodable datagram from {}: {}', sender, incoming)
        elif incoming.msgType == MessageType.Hello:
            logger.info('Hello (MsgId={}) from {}: {!r}', incoming.id, sender, incoming.content)
            session = Session(sender, expectedQueries=expectedQueries)
            return Transition(session, [Message.text(MessageType.Welcome, newId(), WELCOME_TEXT)])
        else:
            logger.info('Ignoring {} from {} - no active session', incoming.msgType.value, sender)
        return Transition(None)

    if sender != session.clientAddress: # only the bound client is served while a session is active
        logger.info('Ignoring datagram from {} during session with {}', sender, session.clientAddress)
        return Transition(session)

    if isinstance(incoming, DecodeError):
        logger.warning('Undecodable datagram from {}: {}', sender, incoming)
        return Transition(session, [Message.text(MessageType.Error, newId(), ERR_INVALID_MESSAGE)])

    msgType = incoming.msgType
    if msgType == MessageType.End: # client gave up on the session
        logger.info('End (MsgId={}) from {} - closing session', incoming.id, sender)
        return Transition(None, closed=True)
    if msgType == MessageType.Hello:
        return _violation(session, ERR_ALREADY_IN_SESSION, newId)

    if session.state == State.AwaitingQuery:
        if msgType == MessageType.DNSLookup: return _handleLookup(session, incoming, records, newId)
        if msgType == MessageType.Ack: return _violation(session, ERR_UNEXPECTED_ACK, newId)
    else: # AwaitingAck
        if msgType == MessageType.Ack: return _handleAck(session, incoming, newId)
        if msgType == MessageType.DNSLookup: return _violation(session, ERR_ACK_EXPECTED, newId)

    return _violation(session, ERR_UNEXPECTED_TYPE, newId) # Welcome, DNSLookupReply or Error from a client

# owner of the (single) active session
class SessionMachine:
    def __init__(
            self,
            records: RecordStore,
            expectedQueries: int = EXPECTED_QUERIES,
            newId: Callable[[], int] = defaultMessageId,
            timeout: float | None = None,
            clock: Callable[[], float] = monotonic
    ):
        if expectedQueries <= 0: raise ValueError('expectedQueries must be positive')
        self.records = records
        self.expectedQueries = expectedQueries
        self.newId = newId
        self.timeout = timeout # seconds of silence from the bound client before its session is dropped (None = never)
        self.clock = clock
        self.session: Session | None = None
        self.lastSeen: float = 0.0 # when the bound client last sent us anything

    @property
    def state(self) -> State:
        return self.session.state if self.session is not None else State.Idle

    @property
    def active(self) -> bool:
        return self.session is not None

    # process a raw datagram, returning the messages to send back to sender
    def handle(self, data: bytes, sender: Address) -> list[Message]:
        try:
            incoming = decode(data)
        except DecodeError as e:
            incoming = e

        result = transition(self.session, incoming, sender, self.records, self.expectedQueries, self.newId)
        if result.session is not None and sender == result.session.clientAddress:
            self.lastSeen = self.clock() # other senders don't keep the session alive
        self.session = result.session
        return result.outgoing

    # drop the session if the bound client has been silent for longer than the timeout
    def expireStale(self) -> bool:
        if self.session is None or self.timeout is None: return False
        if self.clock() - self.lastSeen <= self.timeout: return False
        self.expire()
        return True

    # receive timed out - drop an unresponsive client so the next one can connect
    def expire(self):
        if self.session is None: return
        logger.warning('Session with {} timed out in state {}', self.session.clientAddress, self.session.state.value)
        self.session = None

    # transport failure - drop the session without replying
    def abandon(self, reason: str):
        if self.session is None: return
        logger.error('Abandoning session with {}: {}', self.session.clientAddress, reason)
        self.session = None
