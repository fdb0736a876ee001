from __future__ import annotations

import itertools
from typing import Callable

import pytest

from dnssession.records import Record, RecordStore

CLIENT = ('127.0.0.1', 50000)
OTHER_CLIENT = ('127.0.0.1', 50001)


@pytest.fixture
def records() -> RecordStore:
    return RecordStore([
        Record('A', 'www.example.com', '93.184.216.34', 3600),
        Record('MX', 'example.com', 'mail.example.com', 3600, 10),
        Record('A', 'www.test.com', '192.168.1.1', 1800),
        Record('A', 'www.example.com', '10.0.0.1', 60), # duplicate, never returned
    ])


@pytest.fixture
def newId() -> Callable[[], int]:
    counter = itertools.count(1000)
    return lambda: next(counter)
