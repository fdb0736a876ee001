import json
from dataclasses import dataclass
from ipaddress import IPv4Address
from pathlib import Path

from typing_extensions import Self

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG = PACKAGE_DIR / 'settings.json' # shared by server and client
DEFAULT_RECORDS = PACKAGE_DIR / 'dnsrecords.json'

# raised on a missing or invalid configuration - fatal at startup
class ConfigError(Exception):
    pass

def _checkAddress(key: str, value) -> str:
    if not isinstance(value, str):
        raise ConfigError(f'{key} must be a string')
    try:
        IPv4Address(value) # IPv4 only
    except ValueError:
        raise ConfigError(f'{key} is not a valid IPv4 address: {value!r}') from None
    return value

def _checkPort(key: str, value, allowZero: bool = False) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value > 65535 or value < (0 if allowZero else 1):
        raise ConfigError(f'{key} must be a {"non-negative" if allowZero else "positive"} port number, got {value!r}')
    return value

@dataclass(frozen=True)
class Config:
    serverIP: str
    serverPort: int
    clientIP: str = '0.0.0.0' # all interfaces
    clientPort: int = 0 # 0 = ephemeral port

    @property
    def serverAddress(self) -> tuple[str, int]:
        return (self.serverIP, self.serverPort)

    @property
    def clientAddress(self) -> tuple[str, int] | None: # None if the client shouldn't bind explicitly
        if self.clientPort == 0 and self.clientIP == '0.0.0.0': return None
        return (self.clientIP, self.clientPort)

    @staticmethod
    def fromDict(data: dict) -> Self:
        if not isinstance(data, dict): raise ConfigError('configuration must be a JSON object')
        if 'ServerIP' not in data: raise ConfigError('ServerIP is not set')
        if 'ServerPort' not in data: raise ConfigError('ServerPort is not set')

        clientIP = data.get('ClientIP') or '0.0.0.0' # unset or empty
        clientPort = data.get('ClientPort') or 0

        return Config(
            _checkAddress('ServerIP', data['ServerIP']),
            _checkPort('ServerPort', data['ServerPort']),
            _checkAddress('ClientIP', clientIP),
            _checkPort('ClientPort', clientPort, allowZero=True)
        )

# load configuration from JSON file
def loadConfig(path: str | Path = DEFAULT_CONFIG) -> Config:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except FileNotFoundError:
        raise ConfigError(f'configuration file not found at {path}') from None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ConfigError(f'failed to parse {path}: {e}') from None

    return Config.fromDict(data)
