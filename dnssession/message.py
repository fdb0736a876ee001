import json
from dataclasses import dataclass
from enum import Enum

from typing_extensions import Self

from .records import Record

# raised when a datagram cannot be turned into a Message
class DecodeError(ValueError):
    pass

# message types, with their names as they appear on the wire
class MessageType(Enum):
    Hello = 'Hello'
    Welcome = 'Welcome'
    DNSLookup = 'DNSLookup'
    DNSLookupReply = 'DNSLookupReply'
    Ack = 'Ack'
    Error = 'Error'
    End = 'End'

# message types whose content is free text
TEXT_TYPES = (MessageType.Hello, MessageType.Welcome, MessageType.Error, MessageType.End)

# content of a DNSLookup message
@dataclass(frozen=True)
class QueryDescriptor:
    recordType: str | None # None if the Type field was missing
    name: str | None # None if the Name field was missing
    bare: bool = False # set if the query was sent as a bare name string instead of an object

    # a lookup can only be resolved if it was sent as an object carrying both fields
    @property
    def wellFormed(self) -> bool:
        return not self.bare and bool(self.recordType) and bool(self.name)

    def __str__(self) -> str:
        if self.bare: return repr(self.name)
        return f'{self.recordType} {self.name}'

    # convert to Content field
    def toContent(self) -> str | dict:
        if self.bare: return self.name
        result = {}
        if self.recordType is not None: result['Type'] = self.recordType
        if self.name is not None: result['Name'] = self.name
        return result

    # create from Content field
    @staticmethod
    def fromContent(content) -> Self:
        if isinstance(content, str): # bare name - we keep it so it can be answered with an error
            return QueryDescriptor(None, content, bare=True)
        if not isinstance(content, dict):
            raise DecodeError('DNSLookup content must be an object or a string')

        recordType = content.get('Type')
        name = content.get('Name')
        return QueryDescriptor(
            recordType if isinstance(recordType, str) else None, # mistyped fields count as missing
            name if isinstance(name, str) else None
        )

# content of an Ack message
@dataclass(frozen=True)
class Acknowledgement:
    msgId: int # ID of the message being acknowledged
    textual: bool = True # whether the ID was sent as a string (which is what our client does)

    def toContent(self) -> str | int:
        return str(self.msgId) if self.textual else self.msgId

    @staticmethod
    def fromContent(content) -> Self:
        if isinstance(content, bool): raise DecodeError('Ack content must be a message ID')
        if isinstance(content, int): return Acknowledgement(content, textual=False)
        if isinstance(content, str):
            try:
                return Acknowledgement(int(content), textual=True)
            except ValueError:
                raise DecodeError(f'Ack content is not a message ID: {content!r}') from None
        raise DecodeError('Ack content must be a message ID')

# protocol message class
@dataclass(frozen=True)
class Message:
    id: int # message ID, chosen by the sender (replies echo the request's ID)
    msgType: MessageType
    content: str | QueryDescriptor | Record | Acknowledgement

    def __str__(self) -> str:
        return f'{self.msgType.value}(MsgId={self.id}, Content={self.content})'

    # convenience constructors for the message types we build ourselves
    @staticmethod
    def text(msgType: MessageType, id: int, text: str) -> Self:
        return Message(id, msgType, text)

    @staticmethod
    def lookup(id: int, recordType: str | None, name: str | None) -> Self:
        return Message(id, MessageType.DNSLookup, QueryDescriptor(recordType, name))

    @staticmethod
    def reply(id: int, record: Record) -> Self:
        return Message(id, MessageType.DNSLookupReply, record)

    @staticmethod
    def ack(id: int, ackedId: int) -> Self:
        return Message(id, MessageType.Ack, Acknowledgement(ackedId))

# check that content matches the message type, and convert it to its payload type
def decodeContent(msgType: MessageType, content):
    if msgType in TEXT_TYPES:
        if not isinstance(content, str): raise DecodeError(f'{msgType.value} content must be a string')
        return content
    elif msgType == MessageType.DNSLookup:
        return QueryDescriptor.fromContent(content)
    elif msgType == MessageType.DNSLookupReply:
        if not isinstance(content, dict) or 'TTL' not in content:
            raise DecodeError('DNSLookupReply content must be a complete record')
        try:
            return Record.fromDict(content)
        except ValueError as e:
            raise DecodeError(f'invalid DNSLookupReply content: {e}') from None
    else: # Ack
        return Acknowledgement.fromContent(content)

# convert payload back to Content field
def encodeContent(msgType: MessageType, content):
    if msgType in TEXT_TYPES: return content
    elif msgType == MessageType.DNSLookupReply: return content.toDict()
    else: return content.toContent() # QueryDescriptor and Acknowledgement

# create Message object from raw datagram
def decode(data: bytes) -> Message:
    try:
        obj = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise DecodeError(f'not a JSON message: {e}') from None

    if not isinstance(obj, dict): raise DecodeError('message must be a JSON object')

    id = obj.get('MsgId')
    if not isinstance(id, int) or isinstance(id, bool) or id <= 0:
        raise DecodeError(f'invalid MsgId: {id!r}')

    try:
        msgType = MessageType(obj.get('MsgType'))
    except ValueError:
        raise DecodeError(f'unknown MsgType: {obj.get("MsgType")!r}') from None

    if 'Content' not in obj: raise DecodeError('message has no Content')

    return Message(id, msgType, decodeContent(msgType, obj['Content']))

# output raw datagram
def encode(msg: Message) -> bytes:
    return json.dumps({
        'MsgId': msg.id,
        'MsgType': msg.msgType.value,
        'Content': encodeContent(msg.msgType, msg.content)
    }).encode('utf-8')
