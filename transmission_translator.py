"""
Translation between engine state and Transmission RPC wire values
"""

import base64
import hashlib
import re
import time
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import quote, urlparse

from engine import (AnnounceEntry, EncLevel, EncPolicy, PeSettings, StatusFlags, TorrentInfo, TorrentState,
                    TorrentStatus)
from json_tokens import JsonDocument, TokenType
from logging_utils import log_debug

# Transmission torrent status
TR_STATUS_STOPPED = 0
TR_STATUS_CHECK_WAIT = 1
TR_STATUS_CHECK = 2
TR_STATUS_DOWNLOAD_WAIT = 3
TR_STATUS_DOWNLOAD = 4
TR_STATUS_SEED_WAIT = 5
TR_STATUS_SEED = 6

# Transmission tracker state
TR_TRACKER_INACTIVE = 0
TR_TRACKER_WAITING = 1
TR_TRACKER_QUEUED = 2
TR_TRACKER_ACTIVE = 3

# Transmission file priority
TR_PRI_LOW = -1
TR_PRI_NORMAL = 0
TR_PRI_HIGH = 1

ENCRYPTION_REQUIRED = 'required'
ENCRYPTION_PREFERRED = 'preferred'
ENCRYPTION_TOLERATED = 'tolerated'

_HASH_RE = re.compile(r'[0-9a-fA-F]{40}')

# torrent-get fields that need the torrent's metadata
_METADATA_FIELDS = frozenset([
    'comment', 'creator', 'dateCreated', 'haveValid', 'isPrivate', 'magnetLink', 'pieceCount', 'pieceSize',
    'sizeWhenDone', 'files', 'fileStats', 'wanted', 'priorities', 'webseeds',
])


def torrent_tr_status(ts: TorrentStatus) -> int:
    if ts.paused and not ts.auto_managed:
        return TR_STATUS_STOPPED
    if ts.state == TorrentState.CHECKING_RESUME_DATA:
        return TR_STATUS_CHECK
    if ts.state == TorrentState.CHECKING_FILES:
        return TR_STATUS_CHECK_WAIT if ts.paused else TR_STATUS_CHECK
    if ts.state in (TorrentState.DOWNLOADING_METADATA, TorrentState.DOWNLOADING, TorrentState.ALLOCATING):
        return TR_STATUS_DOWNLOAD_WAIT if ts.paused else TR_STATUS_DOWNLOAD
    if ts.state in (TorrentState.SEEDING, TorrentState.FINISHED):
        return TR_STATUS_SEED_WAIT if ts.paused else TR_STATUS_SEED
    return TR_STATUS_STOPPED


def tracker_status(entry: AnnounceEntry, ts: TorrentStatus) -> int:
    if entry.updating:
        return TR_TRACKER_ACTIVE
    if ts.paused:
        return TR_TRACKER_INACTIVE
    if entry.fail_limit and entry.fails >= entry.fail_limit:
        return TR_TRACKER_INACTIVE
    if entry.verified and entry.start_sent:
        return TR_TRACKER_WAITING
    return TR_TRACKER_QUEUED


def tr_file_priority(priority: int) -> int:
    """Native 0..7 file priority to the Transmission -1/0/1 scale"""
    if priority == 1:
        return TR_PRI_LOW
    if priority > 2:
        return TR_PRI_HIGH
    return TR_PRI_NORMAL


def tracker_id(entry: AnnounceEntry) -> int:
    digest = hashlib.sha1(entry.url.encode('utf-8')).digest()
    return (entry.tier + (digest[0] << 8) + (digest[1] << 16) + (digest[2] << 24)) & 0xffffffff


def tracker_host(url: str) -> str:
    try:
        return urlparse(url).hostname or ''
    except ValueError:
        return ''


def make_magnet_uri(info: TorrentInfo) -> str:
    uri = f"magnet:?xt=urn:btih:{info.info_hash}"
    if info.name:
        uri += '&dn=' + quote(info.name, safe='')
    for tracker in info.trackers:
        uri += '&tr=' + quote(tracker, safe='')
    return uri


def pack_bitfield(bits: List[bool]) -> bytes:
    data = bytearray((len(bits) + 7) // 8)
    for index, bit in enumerate(bits):
        if bit:
            data[index >> 3] |= 0x80 >> (index & 7)
    return bytes(data)


def encryption_name(settings: PeSettings) -> str:
    if settings.in_enc_policy == EncPolicy.FORCED:
        return ENCRYPTION_REQUIRED
    if settings.prefer_rc4:
        return ENCRYPTION_PREFERRED
    return ENCRYPTION_TOLERATED


def apply_encryption(settings: PeSettings, name: str) -> PeSettings:
    """Update engine encryption settings from a Transmission encryption mode"""
    if name == ENCRYPTION_REQUIRED:
        settings.in_enc_policy = EncPolicy.FORCED
        settings.out_enc_policy = EncPolicy.FORCED
        settings.allowed_enc_level = EncLevel.RC4
        settings.prefer_rc4 = True
    elif name == ENCRYPTION_PREFERRED:
        settings.in_enc_policy = EncPolicy.ENABLED
        settings.out_enc_policy = EncPolicy.ENABLED
        settings.allowed_enc_level = EncLevel.BOTH
        settings.prefer_rc4 = True
    else:
        settings.in_enc_policy = EncPolicy.ENABLED
        settings.out_enc_policy = EncPolicy.ENABLED
        settings.allowed_enc_level = EncLevel.BOTH
        settings.prefer_rc4 = False
    return settings


class TorrentSelection:
    """Torrents named by an RPC 'ids' argument

    An empty selection means all torrents, unless it is explicit: a
    non-empty ids array whose entries did not parse selects nothing.
    """

    def __init__(self, ids: Iterable[int] = (), hashes: Iterable[str] = (), explicit: bool = False):
        self.ids: Set[int] = set(ids)
        self.hashes: Set[str] = {h.lower() for h in hashes}
        self.explicit = explicit

    @property
    def all(self) -> bool:
        return not self.explicit and not self.ids and not self.hashes

    def matches(self, torrent_id: int, info_hash: str) -> bool:
        if self.all:
            return True
        return torrent_id in self.ids or info_hash.lower() in self.hashes

    def __repr__(self):
        if self.all:
            return 'TorrentSelection(all)'
        return f"TorrentSelection(ids={sorted(self.ids)}, hashes={sorted(self.hashes)})"


class TorrentFieldEncoder:
    """Builds the torrent-get object for one torrent

    Fields come out in catalog order, whatever order they were asked
    for in. Handle lookups shared by several fields run once.
    """

    def __init__(self, status: TorrentStatus, now: Optional[int] = None):
        self.status = status
        self.handle = status.handle
        self.info = status.torrent_file if status.has_metadata else None
        self.now = int(time.time()) if now is None else now
        self._file_progress = None
        self._file_priorities = None
        self._trackers = None

    def encode(self, fields: Set[str]) -> Dict:
        result = {}
        for name, provider in FIELD_PROVIDERS.items():
            if name in fields:
                result[name] = provider(self)
        return result

    def files(self):
        return self.info.files if self.info else []

    def file_progress(self, index: int) -> int:
        if self._file_progress is None:
            self._file_progress = self.handle.file_progress() if self.info else []
        return self._file_progress[index] if index < len(self._file_progress) else 0

    def file_priority(self, index: int) -> int:
        if self._file_priorities is None:
            self._file_priorities = self.handle.file_priorities() if self.info else []
        return self._file_priorities[index] if index < len(self._file_priorities) else 0

    def trackers(self) -> List[AnnounceEntry]:
        if self._trackers is None:
            self._trackers = self.handle.trackers()
        return self._trackers

    def eta(self) -> int:
        ts = self.status
        if ts.download_payload_rate <= 0:
            return -1
        return (ts.total_wanted - ts.total_wanted_done) // ts.download_payload_rate

    def uploaded_ratio(self) -> int:
        ts = self.status
        if ts.all_time_download == 0:
            return -2
        # integer division, clients read this as a whole number
        return ts.all_time_upload // ts.all_time_download

    def file_list(self) -> List[Dict]:
        return [{
            'bytesCompleted': self.file_progress(index),
            'length': entry.size,
            'name': entry.path,
        } for index, entry in enumerate(self.files())]

    def file_stats(self) -> List[Dict]:
        return [{
            'bytesCompleted': self.file_progress(index),
            'wanted': self.file_priority(index) != 0,
            'priority': tr_file_priority(self.file_priority(index)),
        } for index in range(len(self.files()))]

    def peers(self) -> List[Dict]:
        return [{
            'address': peer.ip,
            'clientName': peer.client,
            'clientIsChoked': peer.choked,
            'clientIsInterested': peer.interesting,
            'flagStr': '',
            'isDownloadingFrom': peer.downloading,
            'isEncrypted': peer.encrypted,
            'isIncoming': peer.incoming,
            'isUploadingTo': peer.uploading,
            'isUTP': peer.utp,
            'peerIsChoked': peer.remote_choked,
            'peerIsInterested': peer.remote_interested,
            'port': peer.port,
            'progress': peer.progress,
            'rateToClient': peer.down_speed,
            'rateToPeer': peer.up_speed,
        } for peer in self.handle.get_peer_info()]

    def tracker_list(self) -> List[Dict]:
        return [{
            'announce': entry.url,
            'id': tracker_id(entry),
            'scrape': entry.url,
            'tier': entry.tier,
        } for entry in self.trackers()]

    def tracker_stats(self) -> List[Dict]:
        # scrape data, peer counts and announce timestamps are not tracked
        # by the engine and are reported as fixed values
        return [{
            'announce': entry.url,
            'announceState': tracker_status(entry, self.status),
            'downloadCount': 0,
            'hasAnnounced': entry.start_sent,
            'hasScraped': False,
            'host': tracker_host(entry.url),
            'id': tracker_id(entry),
            'isBackup': False,
            'lastAnnouncePeerCount': 0,
            'lastAnnounceResult': entry.last_error,
            'lastAnnounceStartTime': 0,
            'lastAnnounceSucceeded': not entry.last_error,
            'lastAnnounceTime': 0,
            'lastAnnounceTimedOut': entry.timed_out,
            'lastScrapePeerCount': 0,
            'lastScrapeResult': '',
            'lastScrapeStartTime': 0,
            'lastScrapeSucceeded': False,
            'lastScrapeTime': 0,
            'lastScrapeTimedOut': False,
            'leecherCount': 0,
            'nextAnnounceTime': self.now + entry.next_announce_in,
            'nextScrapeTime': 0,
            'scrape': entry.url,
            'scrapeState': 0,
            'seederCount': 0,
            'tier': entry.tier,
        } for entry in self.trackers()]


def _progress(ts: TorrentStatus) -> float:
    return round(ts.progress_ppm / 1000000.0, 6)


# Catalog order is the emission order
FIELD_PROVIDERS = {
    'activityDate': lambda e: e.now - min(e.status.time_since_download, e.status.time_since_upload),
    'addedDate': lambda e: e.status.added_time,
    'comment': lambda e: e.info.comment if e.info else '',
    'creator': lambda e: e.info.creator if e.info else '',
    'dateCreated': lambda e: (e.info.creation_date or 0) if e.info else 0,
    'doneDate': lambda e: e.status.completed_time,
    'downloadDir': lambda e: e.status.save_path,
    # 0 when the torrent has an error, transmission clients depend on it
    'error': lambda e: 0 if e.status.error else 1,
    'errorString': lambda e: e.status.error,
    'eta': lambda e: e.eta(),
    'hashString': lambda e: e.status.info_hash.lower(),
    'downloadedEver': lambda e: e.status.all_time_download,
    'downloadLimit': lambda e: e.handle.download_limit(),
    'downloadLimited': lambda e: e.handle.download_limit() > 0,
    'haveValid': lambda e: e.status.num_pieces,
    'id': lambda e: e.handle.id,
    'isFinished': lambda e: e.status.is_finished,
    'isPrivate': lambda e: e.info.priv if e.info else False,
    'isStalled': lambda e: e.status.download_payload_rate == 0,
    'leftUntilDone': lambda e: e.status.total_wanted - e.status.total_wanted_done,
    'magnetLink': lambda e: make_magnet_uri(e.info) if e.info else '',
    'metadataPercentComplete': lambda e: 1.0 if e.status.has_metadata else _progress(e.status),
    'name': lambda e: e.status.name,
    'peer-limit': lambda e: e.handle.max_connections(),
    'peersConnected': lambda e: e.status.num_peers,
    # progress in the range [0, 1] despite the name
    'percentDone': lambda e: _progress(e.status),
    'pieceCount': lambda e: e.info.num_pieces if e.info else 0,
    'pieceSize': lambda e: e.info.piece_length if e.info else 0,
    'queuePosition': lambda e: e.status.queue_position,
    'rateDownload': lambda e: e.status.download_rate,
    'rateUpload': lambda e: e.status.upload_rate,
    'recheckProgress': lambda e: _progress(e.status),
    'secondsDownloading': lambda e: e.status.active_time,
    'secondsSeeding': lambda e: e.status.finished_time,
    'sizeWhenDone': lambda e: e.info.total_size if e.info else 0,
    # bytes done so far, not the torrent size
    'totalSize': lambda e: e.status.total_done,
    'uploadedEver': lambda e: e.status.all_time_upload,
    'uploadLimit': lambda e: e.handle.upload_limit(),
    'uploadLimited': lambda e: e.handle.upload_limit() > 0,
    'uploadedRatio': lambda e: e.uploaded_ratio(),
    'status': lambda e: torrent_tr_status(e.status),
    'files': lambda e: e.file_list(),
    'fileStats': lambda e: e.file_stats(),
    'wanted': lambda e: [e.file_priority(i) != 0 for i in range(len(e.files()))],
    'priorities': lambda e: [tr_file_priority(e.file_priority(i)) for i in range(len(e.files()))],
    'webseeds': lambda e: list(e.info.web_seeds) if e.info else [],
    'pieces': lambda e: base64.b64encode(pack_bitfield(e.status.pieces)).decode('ascii'),
    'peers': lambda e: e.peers(),
    'trackers': lambda e: e.tracker_list(),
    'trackerStats': lambda e: e.tracker_stats(),
}


class TransmissionTranslator:
    """Translate between Transmission RPC arguments and engine queries"""

    @staticmethod
    def status_flags_for(fields: Set[str]) -> StatusFlags:
        """Engine status query flags needed to produce the given fields"""
        flags = StatusFlags.QUERY_NAME
        if fields & _METADATA_FIELDS:
            flags |= StatusFlags.QUERY_TORRENT_FILE
        if 'pieces' in fields:
            flags |= StatusFlags.QUERY_PIECES
        return flags

    @staticmethod
    def encode_torrent(status: TorrentStatus, fields: Set[str], now: Optional[int] = None) -> Dict:
        return TorrentFieldEncoder(status, now).encode(fields)

    @staticmethod
    def get_torrent_ids(doc: JsonDocument, args: Optional[int]) -> TorrentSelection:
        """Parse the 'ids' argument

        Accepts an array of numeric ids and/or 40 character info-hashes, a
        single id, a single info-hash, or "recently-active". Absent, null,
        0 and an empty array select every torrent; array entries that are
        neither ids nor hashes match nothing.
        """
        ids_index = doc.find_key(args, 'ids', TokenType.ARRAY)
        if ids_index is not None:
            ids = set()
            hashes = set()
            entries = 0
            for child in doc.children(ids_index):
                entries += 1
                child_type = doc.type_of(child)
                if child_type == TokenType.STRING:
                    value = doc.string_value(child)
                    if _HASH_RE.fullmatch(value):
                        hashes.add(value)
                        continue
                    number = doc.int_value(child, None)
                    if number is not None:
                        ids.add(number)
                    else:
                        log_debug(f"[RPC] Ignoring unknown torrent id {value!r}")
                elif child_type == TokenType.PRIMITIVE:
                    ids.add(doc.int_value(child))
            selection = TorrentSelection(ids, hashes, explicit=entries > 0)
        else:
            single = doc.find_string(args, 'ids', None)
            if single is not None and _HASH_RE.fullmatch(single):
                selection = TorrentSelection(hashes=[single])
            else:
                torrent_id = doc.find_int(args, 'ids', 0)
                selection = TorrentSelection([torrent_id] if torrent_id else [])

        log_debug(f"[RPC] Requested torrents: {selection}")
        return selection
