import json
from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from typing_extensions import Self

# raised when the record table file cannot be read at all
class RecordFileError(Exception):
    pass

# DNS record class (immutable once loaded)
@dataclass(frozen=True)
class Record:
    recordType: str # record type (A/CNAME/NS/MX...)
    name: str # the record's name (e.g. example.com)
    value: str # the record's value
    ttl: int = 3600 # the record's TTL in seconds
    priority: int | None = None # only meaningful for MX-like records

    # get string representation of the record (for debugging, mostly)
    def __repr__(self) -> str:
        return f'{self.recordType} {self.name}: {self.value} (TTL={self.ttl})'

    # whether this record answers a (type, name) query - comparison is case-insensitive
    def matches(self, recordType: str, name: str) -> bool:
        return self.recordType.lower() == recordType.lower() and self.name.lower() == name.lower()

    # convert to the object shape used in both the record table file and DNSLookupReply content
    def toDict(self) -> dict:
        result = {'Type': self.recordType, 'Name': self.name, 'Value': self.value, 'TTL': self.ttl}
        if self.priority is not None: result['Priority'] = self.priority # omitted when unset
        return result

    # create record from its object shape - raises ValueError if a required field is missing or mistyped
    @staticmethod
    def fromDict(data: dict) -> Self:
        if not isinstance(data, dict):
            raise ValueError('record must be an object')

        for field in ('Type', 'Name', 'Value'):
            if not isinstance(data.get(field), str) or len(data[field]) == 0:
                raise ValueError(f'record is missing {field}')

        ttl = data.get('TTL', 3600)
        priority = data.get('Priority')
        if not isinstance(ttl, int) or isinstance(ttl, bool):
            raise ValueError('record TTL must be an integer')
        if priority is not None and (not isinstance(priority, int) or isinstance(priority, bool)):
            raise ValueError('record Priority must be an integer')

        return Record(data['Type'], data['Name'], data['Value'], ttl, priority)

# static table of resolvable records
class RecordStore:
    def __init__(self, records: list[Record] | None = None):
        self.records: tuple[Record, ...] = tuple(records) if records is not None else () # read-only after loading

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    # look up a record by type and name, returning None if there is none (first match wins)
    def resolve(self, recordType: str, name: str) -> Record | None:
        for record in self.records:
            if record.matches(recordType, name): return record

        return None

# load record table from JSON file
def loadRecords(path: str | Path) -> RecordStore:
    path = Path(path)
    try:
        entries = json.loads(path.read_text(encoding='utf-8'))
    except FileNotFoundError as e:
        raise RecordFileError(f'DNS records file not found at {path}') from e
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RecordFileError(f'failed to parse {path}: {e}') from e

    if not isinstance(entries, list):
        raise RecordFileError(f'{path} must contain a JSON array of records')

    records = []
    for index, entry in enumerate(entries):
        try:
            records.append(Record.fromDict(entry))
        except ValueError as e:
            logger.warning('Dropping record #{} from {}: {}', index, path, e) # skip it, but keep loading the rest

    logger.info('Loaded {} DNS records from {}', len(records), path)
    return RecordStore(records)
