"""
Torrent engine capability surface consumed by the Transmission RPC adapter

The adapter never talks to a concrete engine directly. It works through
the Session and TorrentHandle interfaces below and the plain records
they return.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """An engine call was rejected; the message is shown to RPC clients"""


class TorrentAlreadyAdded(EngineError):
    def __init__(self, handle: 'TorrentHandle', message: str = 'torrent already exists in session'):
        super().__init__(message)
        self.handle = handle


class TorrentState(IntEnum):
    QUEUED_FOR_CHECKING = 0
    CHECKING_FILES = 1
    DOWNLOADING_METADATA = 2
    DOWNLOADING = 3
    FINISHED = 4
    SEEDING = 5
    ALLOCATING = 6
    CHECKING_RESUME_DATA = 7


class StatusFlags(IntFlag):
    QUERY_DEFAULT = 0
    QUERY_NAME = 1
    QUERY_TORRENT_FILE = 2
    QUERY_PIECES = 4


class SettingKey(IntEnum):
    CACHE_SIZE = 0  # in 16 kiB blocks
    ACTIVE_DOWNLOADS = 1
    ACTIVE_SEEDS = 2
    DOWNLOAD_RATE_LIMIT = 3  # bytes/s, 0 = unlimited
    UPLOAD_RATE_LIMIT = 4  # bytes/s, 0 = unlimited
    ENABLE_INCOMING_UTP = 5
    ENABLE_OUTGOING_UTP = 6
    CONNECTIONS_LIMIT = 7
    USER_AGENT = 8


class EncPolicy(IntEnum):
    FORCED = 0
    ENABLED = 1
    DISABLED = 2


class EncLevel(IntEnum):
    PLAINTEXT = 1
    RC4 = 2
    BOTH = 3


# Native file priorities run from 0 (don't download) to 7 (top)
PRIORITY_DONT_DOWNLOAD = 0
PRIORITY_LOW = 1
PRIORITY_NORMAL = 2
PRIORITY_HIGH = 7


class SettingsPack(dict):
    """Typed mapping from SettingKey to value"""

    def get_int(self, key: SettingKey, default: int = 0) -> int:
        return int(self.get(key, default))

    def get_bool(self, key: SettingKey, default: bool = False) -> bool:
        return bool(self.get(key, default))

    def get_str(self, key: SettingKey, default: str = '') -> str:
        return str(self.get(key, default))

    def set_int(self, key: SettingKey, value: int):
        self[key] = int(value)

    def set_bool(self, key: SettingKey, value: bool):
        self[key] = bool(value)

    def set_str(self, key: SettingKey, value: str):
        self[key] = str(value)


@dataclass
class PeSettings:
    in_enc_policy: EncPolicy = EncPolicy.ENABLED
    out_enc_policy: EncPolicy = EncPolicy.ENABLED
    allowed_enc_level: EncLevel = EncLevel.BOTH
    prefer_rc4: bool = False


@dataclass
class FileEntry:
    path: str
    size: int


@dataclass
class TorrentInfo:
    """Parsed metadata of a torrent"""
    info_hash: str
    name: str
    comment: str = ''
    creator: str = ''
    creation_date: Optional[int] = None
    priv: bool = False
    num_pieces: int = 0
    piece_length: int = 0
    total_size: int = 0
    files: List[FileEntry] = field(default_factory=list)
    trackers: List[str] = field(default_factory=list)
    web_seeds: List[str] = field(default_factory=list)


@dataclass
class AnnounceEntry:
    url: str
    tier: int = 0
    fails: int = 0
    fail_limit: int = 0  # 0 = no limit
    updating: bool = False
    verified: bool = False
    start_sent: bool = False
    last_error: str = ''
    timed_out: bool = False
    next_announce_in: int = 0  # seconds


@dataclass
class PeerInfo:
    ip: str
    port: int
    client: str = ''
    choked: bool = True  # we choke the peer
    interesting: bool = False  # we are interested in the peer
    remote_choked: bool = True  # the peer chokes us
    remote_interested: bool = False
    downloading: bool = False
    uploading: bool = False
    encrypted: bool = False
    incoming: bool = False
    utp: bool = False
    progress: float = 0.0
    down_speed: int = 0
    up_speed: int = 0


@dataclass
class TorrentStatus:
    """Snapshot of one torrent, as returned by Session.get_torrent_status()"""
    handle: 'TorrentHandle'
    info_hash: str
    name: str = ''
    save_path: str = ''
    state: TorrentState = TorrentState.QUEUED_FOR_CHECKING
    paused: bool = False
    auto_managed: bool = True
    has_metadata: bool = False
    progress_ppm: int = 0
    time_since_download: int = 0
    time_since_upload: int = 0
    added_time: int = 0
    completed_time: int = 0
    error: str = ''
    total_wanted: int = 0
    total_wanted_done: int = 0
    total_done: int = 0
    download_payload_rate: int = 0
    upload_payload_rate: int = 0
    download_rate: int = 0
    upload_rate: int = 0
    all_time_download: int = 0
    all_time_upload: int = 0
    num_pieces: int = 0
    num_peers: int = 0
    is_finished: bool = False
    queue_position: int = -1
    active_time: int = 0
    finished_time: int = 0
    # Only filled when requested through StatusFlags
    torrent_file: Optional[TorrentInfo] = None
    pieces: List[bool] = field(default_factory=list)


@dataclass
class SessionStatus:
    num_torrents: int = 0
    num_paused_torrents: int = 0
    payload_download_rate: int = 0
    payload_upload_rate: int = 0
    total_payload_download: int = 0
    total_payload_upload: int = 0


@dataclass
class AddTorrentParams:
    """Parameters for adding a torrent, also used as the adapter's template"""
    save_path: str = '.'
    paused: bool = False
    auto_managed: bool = True
    url: str = ''
    metainfo: Optional[bytes] = None


class TorrentHandle(ABC):
    @property
    @abstractmethod
    def id(self) -> int:
        """Stable 32-bit id of the torrent"""

    @abstractmethod
    def info_hash(self) -> str:
        """40 character lowercase hex info-hash"""

    @abstractmethod
    def status(self, flags: StatusFlags = StatusFlags.QUERY_DEFAULT) -> TorrentStatus: ...

    @abstractmethod
    def pause(self): ...

    @abstractmethod
    def resume(self): ...

    @abstractmethod
    def auto_managed(self, enabled: bool): ...

    @abstractmethod
    def force_recheck(self): ...

    @abstractmethod
    def force_reannounce(self): ...

    @abstractmethod
    def download_limit(self) -> int: ...

    @abstractmethod
    def set_download_limit(self, limit: int): ...

    @abstractmethod
    def upload_limit(self) -> int: ...

    @abstractmethod
    def set_upload_limit(self, limit: int): ...

    @abstractmethod
    def max_connections(self) -> int: ...

    @abstractmethod
    def set_max_connections(self, limit: int): ...

    @abstractmethod
    def move_storage(self, save_path: str): ...

    @abstractmethod
    def file_priorities(self) -> List[int]: ...

    @abstractmethod
    def prioritize_files(self, priorities: List[int]): ...

    @abstractmethod
    def file_progress(self) -> List[int]:
        """Bytes downloaded per file"""

    @abstractmethod
    def trackers(self) -> List[AnnounceEntry]: ...

    @abstractmethod
    def replace_trackers(self, trackers: List[AnnounceEntry]): ...

    @abstractmethod
    def get_peer_info(self) -> List[PeerInfo]: ...


class Session(ABC):
    @abstractmethod
    def add_torrent(self, params: AddTorrentParams) -> TorrentHandle:
        """Add a torrent and return its handle

        Raises EngineError when the torrent is rejected and
        TorrentAlreadyAdded when it is already in the session.
        """

    @abstractmethod
    def async_add_torrent(self, params: AddTorrentParams):
        """Add a torrent without waiting for the handle"""

    @abstractmethod
    def remove_torrent(self, handle: TorrentHandle, delete_files: bool = False): ...

    @abstractmethod
    def get_torrents(self) -> List[TorrentHandle]: ...

    @abstractmethod
    def get_torrent_status(self, flags: StatusFlags = StatusFlags.QUERY_DEFAULT) -> List[TorrentStatus]: ...

    @abstractmethod
    def status(self) -> SessionStatus: ...

    @abstractmethod
    def get_settings(self) -> SettingsPack: ...

    @abstractmethod
    def apply_settings(self, pack: Dict[SettingKey, Any]): ...

    @abstractmethod
    def get_pe_settings(self) -> PeSettings: ...

    @abstractmethod
    def set_pe_settings(self, settings: PeSettings): ...

    @abstractmethod
    def listen_on(self, port: int): ...

    @abstractmethod
    def listen_port(self) -> int: ...
