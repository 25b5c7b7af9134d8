"""
qBittorrent WebUI API client and the engine session built on it
"""

import base64
import binascii
import json
import re
import time
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import requests

from engine import (PRIORITY_DONT_DOWNLOAD, PRIORITY_HIGH, PRIORITY_NORMAL, AddTorrentParams, AnnounceEntry,
                    EncLevel, EncPolicy, EngineError, FileEntry, PeerInfo, PeSettings, Session, SessionStatus,
                    SettingKey, SettingsPack, StatusFlags, TorrentAlreadyAdded, TorrentHandle, TorrentInfo,
                    TorrentState, TorrentStatus)
from logging_utils import log_debug, log_error, log_trace, log_warning


class QBittorrentClient:
    """Handle qBittorrent WebUI API communication"""

    def __init__(self, url: str, username: str, password: str, timeout: float = 30.0):
        self.url = url.rstrip('/')
        self.username = username
        self.password = password
        self.timeout = timeout
        self.session = requests.Session()
        self.logged_in = False

    def login(self):
        """Login to qBittorrent, raises EngineError when rejected"""
        if self.logged_in:
            return

        log_debug(f"[QBT] Attempting login to {self.url}")
        try:
            response = self.session.post(
                f"{self.url}/api/v2/auth/login",
                data={"username": self.username, "password": self.password},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            log_error(f"[QBT] Login error: {e}")
            raise EngineError(f"cannot reach qBittorrent: {e}") from e

        self.logged_in = response.text == "Ok."
        if not self.logged_in:
            log_error(f"[QBT] Login failed: {response.text}")
            raise EngineError("qBittorrent login failed")
        log_debug("[QBT] Login successful")

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        self.login()
        url = f"{self.url}/api/v2/{path}"
        log_trace(f"[QBT] {method} {path} {kwargs.get('params') or kwargs.get('data') or ''}")
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            if response.status_code == 403:
                log_debug("[QBT] Session cookie expired, logging in again")
                self.logged_in = False
                self.login()
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            log_error(f"[QBT] Request to {path} failed: {e}")
            raise EngineError(f"qBittorrent request failed: {e}") from e

        if not response.ok:
            log_error(f"[QBT] {path} failed: {response.status_code} - {response.text}")
            raise EngineError(f"qBittorrent {path} failed: {response.status_code} {response.text}".strip())
        return response

    @staticmethod
    def _json(response: requests.Response, path: str):
        try:
            return response.json()
        except ValueError as e:
            log_error(f"[QBT] {path} returned invalid JSON: {e}")
            raise EngineError(f"qBittorrent returned invalid JSON for {path}") from e

    def _get(self, path: str, **params):
        return self._json(self._request('GET', path, params=params), path)

    def _post(self, path: str, data: Optional[Dict] = None, files: Optional[Dict] = None) -> str:
        return self._request('POST', path, data=data, files=files).text

    def get_torrents(self, hashes: Optional[List[str]] = None) -> List[Dict]:
        """Get torrent list"""
        params = {'hashes': '|'.join(hashes)} if hashes else {}
        torrents = self._get('torrents/info', **params)
        log_debug(f"[QBT] Retrieved {len(torrents)} torrent(s)")
        return torrents

    def get_torrent_properties(self, torrent_hash: str) -> Dict:
        log_debug(f"[QBT] Getting properties for torrent: {torrent_hash}")
        return self._get('torrents/properties', hash=torrent_hash)

    def get_torrent_trackers(self, torrent_hash: str) -> List[Dict]:
        log_debug(f"[QBT] Getting trackers for torrent: {torrent_hash}")
        return self._get('torrents/trackers', hash=torrent_hash)

    def get_torrent_files(self, torrent_hash: str) -> List[Dict]:
        log_debug(f"[QBT] Getting files for torrent: {torrent_hash}")
        return self._get('torrents/files', hash=torrent_hash)

    def get_torrent_webseeds(self, torrent_hash: str) -> List[Dict]:
        return self._get('torrents/webseeds', hash=torrent_hash)

    def get_piece_states(self, torrent_hash: str) -> List[int]:
        """Per piece: 0 = missing, 1 = downloading, 2 = downloaded"""
        return self._get('torrents/pieceStates', hash=torrent_hash)

    def get_torrent_peers(self, torrent_hash: str) -> Dict[str, Dict]:
        log_debug(f"[QBT] Getting peers for torrent: {torrent_hash}")
        return self._get('sync/torrentPeers', hash=torrent_hash, rid=0).get('peers', {})

    def add_torrent(self, urls: Optional[str] = None, torrent: Optional[bytes] = None,
                    save_path: Optional[str] = None, paused: Optional[bool] = None):
        """Add a torrent from a URL or from .torrent file content"""
        files = {}
        data = {}

        if torrent is not None:
            files['torrents'] = ('upload.torrent', torrent, 'application/x-bittorrent')
        if urls:
            data['urls'] = urls
        if save_path:
            data['savepath'] = save_path
            data['autoTMM'] = 'false'
        if paused is not None:
            # 'stopped' since qBittorrent 5, 'paused' before
            data['stopped'] = 'true' if paused else 'false'
            data['paused'] = data['stopped']

        log_debug(f"[QBT] Adding torrent with data: {data}")
        result = self._post('torrents/add', data=data, files=files or None)
        if result.strip() != "Ok.":
            log_error(f"[QBT] Add torrent result: Failed - {result}")
            raise EngineError('torrent rejected by qBittorrent')
        log_debug("[QBT] Add torrent result: Success")

    def start_torrents(self, hashes: List[str]):
        log_debug(f"[QBT] Starting torrents: {'|'.join(hashes)}")
        self._post('torrents/start', data={"hashes": '|'.join(hashes)})

    def stop_torrents(self, hashes: List[str]):
        log_debug(f"[QBT] Stopping torrents: {'|'.join(hashes)}")
        self._post('torrents/stop', data={"hashes": '|'.join(hashes)})

    def set_force_start(self, hashes: List[str], value: bool):
        log_debug(f"[QBT] Force start {value}: {'|'.join(hashes)}")
        self._post('torrents/setForceStart', data={"hashes": '|'.join(hashes), "value": 'true' if value else 'false'})

    def remove_torrents(self, hashes: List[str], delete_data: bool = False):
        log_debug(f"[QBT] Removing torrents: {'|'.join(hashes)} (delete_data={delete_data})")
        self._post('torrents/delete', data={
            "hashes": '|'.join(hashes),
            "deleteFiles": "true" if delete_data else "false"
        })

    def verify_torrents(self, hashes: List[str]):
        log_debug(f"[QBT] Verifying torrents: {'|'.join(hashes)}")
        self._post('torrents/recheck', data={"hashes": '|'.join(hashes)})

    def reannounce_torrents(self, hashes: List[str]):
        log_debug(f"[QBT] Reannouncing torrents: {'|'.join(hashes)}")
        self._post('torrents/reannounce', data={"hashes": '|'.join(hashes)})

    def set_torrent_location(self, hashes: List[str], location: str):
        """Set torrent location (always moves files in qBittorrent)"""
        log_debug(f"[QBT] Setting location for torrents: {'|'.join(hashes)} to: {location}")
        self._post('torrents/setLocation', data={"hashes": '|'.join(hashes), "location": location})

    def add_trackers(self, torrent_hash: str, urls: List[str]):
        log_debug(f"[QBT] Adding trackers to torrent {torrent_hash}: {urls}")
        self._post('torrents/addTrackers', data={"hash": torrent_hash, "urls": "\n".join(urls)})

    def remove_trackers(self, torrent_hash: str, urls: List[str]):
        log_debug(f"[QBT] Removing trackers from torrent {torrent_hash}: {urls}")
        self._post('torrents/removeTrackers', data={"hash": torrent_hash, "urls": "|".join(urls)})

    def get_download_limits(self, hashes: List[str]) -> Dict[str, int]:
        response = self._request('POST', 'torrents/downloadLimit', data={"hashes": '|'.join(hashes)})
        return self._json(response, 'torrents/downloadLimit')

    def get_upload_limits(self, hashes: List[str]) -> Dict[str, int]:
        response = self._request('POST', 'torrents/uploadLimit', data={"hashes": '|'.join(hashes)})
        return self._json(response, 'torrents/uploadLimit')

    def set_download_limit(self, hashes: List[str], limit: int):
        log_debug(f"[QBT] Download limit {limit} B/s: {'|'.join(hashes)}")
        self._post('torrents/setDownloadLimit', data={"hashes": '|'.join(hashes), "limit": limit})

    def set_upload_limit(self, hashes: List[str], limit: int):
        log_debug(f"[QBT] Upload limit {limit} B/s: {'|'.join(hashes)}")
        self._post('torrents/setUploadLimit', data={"hashes": '|'.join(hashes), "limit": limit})

    def set_file_priority(self, torrent_hash: str, file_ids: List[int], priority: int):
        log_debug(f"[QBT] File priority {priority} for files {file_ids} of {torrent_hash}")
        self._post('torrents/filePrio', data={
            "hash": torrent_hash,
            "id": '|'.join(str(i) for i in file_ids),
            "priority": priority
        })

    def get_preferences(self) -> Dict:
        return self._get('app/preferences')

    def set_preferences(self, preferences: Dict):
        log_debug(f"[QBT] Setting preferences: {preferences}")
        self._post('app/setPreferences', data={"json": json.dumps(preferences)})

    def get_version(self) -> str:
        return self._request('GET', 'app/version').text.strip()

    def get_transfer_info(self) -> Dict:
        """Get transfer statistics"""
        return self._get('transfer/info')


# qBittorrent state -> (engine state, paused, auto-managed)
STATE_MAP: Dict[str, Tuple[TorrentState, bool, bool]] = {
    'allocating': (TorrentState.ALLOCATING, False, True),
    'downloading': (TorrentState.DOWNLOADING, False, True),
    'stalledDL': (TorrentState.DOWNLOADING, False, True),
    'forcedDL': (TorrentState.DOWNLOADING, False, False),
    'metaDL': (TorrentState.DOWNLOADING_METADATA, False, True),
    'forcedMetaDL': (TorrentState.DOWNLOADING_METADATA, False, False),
    'queuedDL': (TorrentState.DOWNLOADING, True, True),
    'pausedDL': (TorrentState.DOWNLOADING, True, False),
    'stoppedDL': (TorrentState.DOWNLOADING, True, False),
    'checkingDL': (TorrentState.CHECKING_FILES, False, True),
    'uploading': (TorrentState.SEEDING, False, True),
    'stalledUP': (TorrentState.SEEDING, False, True),
    'forcedUP': (TorrentState.SEEDING, False, False),
    'queuedUP': (TorrentState.SEEDING, True, True),
    'pausedUP': (TorrentState.FINISHED, True, False),
    'stoppedUP': (TorrentState.FINISHED, True, False),
    'checkingUP': (TorrentState.CHECKING_FILES, False, True),
    'checkingResumeData': (TorrentState.CHECKING_RESUME_DATA, False, True),
    'moving': (TorrentState.DOWNLOADING, False, True),
    'error': (TorrentState.DOWNLOADING, True, False),
    'missingFiles': (TorrentState.DOWNLOADING, True, False),
}
UNKNOWN_STATE = (TorrentState.QUEUED_FOR_CHECKING, True, False)

ERROR_STATES = {
    'error': 'torrent error',
    'missingFiles': 'missing files',
}
METADATA_STATES = frozenset(['metaDL', 'forcedMetaDL'])

# qBittorrent file priority -> native
QBT_TO_NATIVE_PRIORITY = {0: PRIORITY_DONT_DOWNLOAD, 1: PRIORITY_NORMAL, 6: PRIORITY_HIGH, 7: PRIORITY_HIGH}

# qBittorrent tracker status
TRACKER_DISABLED = 0
TRACKER_WORKING = 2
TRACKER_UPDATING = 3
TRACKER_NOT_WORKING = 4

# app preference 'bittorrent_protocol'
PROTOCOL_TCP_AND_UTP = 0
PROTOCOL_TCP = 1

# app preference 'encryption'
ENCRYPTION_PREFER = 0
ENCRYPTION_REQUIRE = 1
ENCRYPTION_DISABLE = 2

ADD_RESOLVE_ATTEMPTS = 10
ADD_RESOLVE_DELAY = 0.3

_BTIH_RE = re.compile(r'urn:btih:([0-9a-zA-Z]+)')


def native_to_qbt_priority(priority: int) -> int:
    if priority <= 0:
        return 0
    if priority <= 2:
        return 1
    if priority < 7:
        return 6
    return 7


def magnet_info_hash(uri: str) -> Optional[str]:
    """Lowercase hex info-hash of a magnet link, hex or base32 encoded"""
    if not uri.startswith('magnet:'):
        return None
    for xt in parse_qs(urlparse(uri).query).get('xt', []):
        match = _BTIH_RE.fullmatch(xt)
        if not match:
            continue
        value = match.group(1)
        if len(value) == 40:
            return value.lower()
        if len(value) == 32:
            try:
                return base64.b32decode(value.upper()).hex()
            except (binascii.Error, ValueError):
                return None
    return None


def torrent_id(info_hash: str) -> int:
    return int(info_hash[:8], 16)


def parse_peer(peer: Dict) -> PeerInfo:
    """Peer record from sync/torrentPeers; flags are qBittorrent's letter codes"""
    flags = set(peer.get('flags', '').split())
    return PeerInfo(
        ip=peer.get('ip', ''),
        port=peer.get('port', 0),
        client=peer.get('client', ''),
        choked=not ({'U', '?'} & flags),
        interesting=bool({'D', 'd'} & flags),
        remote_choked=not ({'D', 'K'} & flags),
        remote_interested=bool({'U', 'u'} & flags),
        downloading='D' in flags,
        uploading='U' in flags,
        encrypted=bool({'E', 'e'} & flags),
        incoming='I' in flags,
        utp='P' in flags or 'TP' in peer.get('connection', ''),
        progress=round(peer.get('progress', 0.0), 6),
        down_speed=peer.get('dl_speed', 0),
        up_speed=peer.get('up_speed', 0),
    )


def parse_tracker(tracker: Dict) -> AnnounceEntry:
    status = tracker.get('status', 1)
    disabled = status == TRACKER_DISABLED
    failing = status == TRACKER_NOT_WORKING
    return AnnounceEntry(
        url=tracker['url'],
        tier=max(tracker.get('tier', 0), 0),
        fails=1 if disabled or failing else 0,
        fail_limit=1 if disabled else 0,
        updating=status == TRACKER_UPDATING,
        verified=status == TRACKER_WORKING,
        start_sent=status in (TRACKER_WORKING, TRACKER_UPDATING, TRACKER_NOT_WORKING),
        last_error=tracker.get('msg', '') if failing else '',
        timed_out=failing and 'timed out' in tracker.get('msg', '').lower(),
        next_announce_in=tracker.get('next_announce', 0),
    )


def _real_trackers(trackers: List[Dict]) -> List[Dict]:
    # DHT, PeX and LSD are listed as pseudo trackers with tier -1
    return [t for t in trackers if t.get('tier', 0) != -1 and not t.get('url', '').startswith('** [')]


class QBittorrentTorrentHandle(TorrentHandle):
    """One torrent in qBittorrent, addressed by info-hash"""

    def __init__(self, client: QBittorrentClient, info_hash: str):
        self.client = client
        self.hash = info_hash.lower()
        self._auto_managed = None

    def __eq__(self, other):
        return isinstance(other, QBittorrentTorrentHandle) and other.hash == self.hash

    def __hash__(self):
        return hash(self.hash)

    def __repr__(self):
        return f"QBittorrentTorrentHandle({self.hash})"

    @property
    def id(self):
        return torrent_id(self.hash)

    def info_hash(self):
        return self.hash

    def status(self, flags=StatusFlags.QUERY_DEFAULT):
        torrents = self.client.get_torrents([self.hash])
        if not torrents:
            raise EngineError('torrent not found')
        return build_status(self.client, self, torrents[0], flags)

    def pause(self):
        self.client.stop_torrents([self.hash])

    def resume(self):
        if self._auto_managed is not None:
            self.client.set_force_start([self.hash], not self._auto_managed)
        self.client.start_torrents([self.hash])

    def auto_managed(self, enabled):
        # qBittorrent has no separate flag, a torrent outside the queue is
        # force-started; applied on the next resume()
        self._auto_managed = enabled

    def force_recheck(self):
        self.client.verify_torrents([self.hash])

    def force_reannounce(self):
        self.client.reannounce_torrents([self.hash])

    def download_limit(self):
        return max(self.client.get_download_limits([self.hash]).get(self.hash, 0), 0)

    def set_download_limit(self, limit):
        self.client.set_download_limit([self.hash], limit)

    def upload_limit(self):
        return max(self.client.get_upload_limits([self.hash]).get(self.hash, 0), 0)

    def set_upload_limit(self, limit):
        self.client.set_upload_limit([self.hash], limit)

    def max_connections(self):
        return self.client.get_preferences().get('max_connec_per_torrent', 0)

    def set_max_connections(self, limit):
        log_warning(f"[QBT] Per-torrent connection limit not supported by qBittorrent, ignoring {limit} for {self.hash}")

    def move_storage(self, save_path):
        self.client.set_torrent_location([self.hash], save_path)

    def file_priorities(self):
        return [QBT_TO_NATIVE_PRIORITY.get(f.get('priority', 1), PRIORITY_NORMAL)
                for f in self.client.get_torrent_files(self.hash)]

    def prioritize_files(self, priorities):
        files = self.client.get_torrent_files(self.hash)
        changes: Dict[int, List[int]] = {}
        for index, (entry, priority) in enumerate(zip(files, priorities)):
            qbt_priority = native_to_qbt_priority(priority)
            if entry.get('priority') != qbt_priority:
                changes.setdefault(qbt_priority, []).append(entry.get('index', index))
        for qbt_priority, file_ids in changes.items():
            self.client.set_file_priority(self.hash, file_ids, qbt_priority)

    def file_progress(self):
        return [int(f.get('size', 0) * f.get('progress', 0.0)) for f in self.client.get_torrent_files(self.hash)]

    def trackers(self):
        return [parse_tracker(t) for t in _real_trackers(self.client.get_torrent_trackers(self.hash))]

    def replace_trackers(self, trackers):
        current = [t['url'] for t in _real_trackers(self.client.get_torrent_trackers(self.hash))]
        wanted = [t.url for t in trackers]
        to_add = [url for url in wanted if url not in current]
        to_remove = [url for url in current if url not in wanted]
        if to_remove:
            self.client.remove_trackers(self.hash, to_remove)
        if to_add:
            self.client.add_trackers(self.hash, to_add)

    def get_peer_info(self):
        return [parse_peer(p) for p in self.client.get_torrent_peers(self.hash).values()]


def build_status(client: QBittorrentClient, handle: QBittorrentTorrentHandle, t: Dict,
                 flags: StatusFlags) -> TorrentStatus:
    """TorrentStatus from a torrents/info entry, fetching extra data as flags ask"""
    state, paused, auto_managed = STATE_MAP.get(t.get('state', ''), UNKNOWN_STATE)
    has_metadata = t.get('state') not in METADATA_STATES
    now = int(time.time())
    last_activity = t.get('last_activity', 0)
    idle = max(now - last_activity, 0) if last_activity > 0 else now
    priority = t.get('priority', 0)
    completed = t.get('completed', t.get('size', 0) - t.get('amount_left', 0))

    status = TorrentStatus(
        handle=handle,
        info_hash=t['hash'].lower(),
        name=t.get('name', ''),
        save_path=t.get('save_path', ''),
        state=state,
        paused=paused,
        auto_managed=auto_managed and not t.get('force_start', False),
        has_metadata=has_metadata,
        progress_ppm=int(t.get('progress', 0.0) * 1000000),
        time_since_download=idle,
        time_since_upload=idle,
        added_time=t.get('added_on', 0),
        completed_time=max(t.get('completion_on', 0), 0),
        error=ERROR_STATES.get(t.get('state'), ''),
        total_wanted=t.get('size', 0),
        total_wanted_done=completed,
        total_done=completed,
        download_payload_rate=t.get('dlspeed', 0),
        upload_payload_rate=t.get('upspeed', 0),
        download_rate=t.get('dlspeed', 0),
        upload_rate=t.get('upspeed', 0),
        all_time_download=t.get('downloaded', 0),
        all_time_upload=t.get('uploaded', 0),
        num_peers=t.get('num_seeds', 0) + t.get('num_leechs', 0),
        is_finished=t.get('progress', 0.0) >= 1.0,
        queue_position=priority - 1 if priority > 0 else -1,
        active_time=t.get('time_active', 0),
        finished_time=t.get('seeding_time', 0),
    )

    if flags & StatusFlags.QUERY_TORRENT_FILE and has_metadata:
        properties = client.get_torrent_properties(handle.hash)
        status.num_pieces = properties.get('pieces_have', 0)
        status.torrent_file = TorrentInfo(
            info_hash=handle.hash,
            name=status.name,
            comment=properties.get('comment', ''),
            creator=properties.get('created_by', ''),
            creation_date=properties.get('creation_date') if properties.get('creation_date', -1) > 0 else None,
            priv=bool(properties.get('is_private', t.get('private', False))),
            num_pieces=properties.get('pieces_num', 0),
            piece_length=properties.get('piece_size', 0),
            total_size=properties.get('total_size', t.get('total_size', 0)),
            files=[FileEntry(f.get('name', ''), f.get('size', 0)) for f in client.get_torrent_files(handle.hash)],
            trackers=[tr['url'] for tr in _real_trackers(client.get_torrent_trackers(handle.hash))],
            web_seeds=[w.get('url', '') for w in client.get_torrent_webseeds(handle.hash)],
        )

    if flags & StatusFlags.QUERY_PIECES and has_metadata:
        status.pieces = [s == 2 for s in client.get_piece_states(handle.hash)]

    return status


class QBittorrentSession(Session):
    """Engine session backed by a qBittorrent instance"""

    def __init__(self, client: QBittorrentClient):
        self.client = client
        self._prefer_rc4 = True

    def _handle(self, info_hash: str) -> QBittorrentTorrentHandle:
        return QBittorrentTorrentHandle(self.client, info_hash)

    def _add(self, params: AddTorrentParams):
        self.client.add_torrent(
            urls=params.url or None,
            torrent=params.metainfo if not params.url else None,
            save_path=params.save_path if params.save_path not in ('', '.') else None,
            paused=params.paused,
        )

    def add_torrent(self, params):
        magnet_hash = magnet_info_hash(params.url) if params.url else None
        if magnet_hash and self.client.get_torrents([magnet_hash]):
            raise TorrentAlreadyAdded(self._handle(magnet_hash))

        known = {t['hash'].lower() for t in self.client.get_torrents()}
        self._add(params)

        # qBittorrent adds asynchronously and does not report the new hash
        for attempt in range(ADD_RESOLVE_ATTEMPTS):
            if magnet_hash:
                if self.client.get_torrents([magnet_hash]):
                    return self._handle(magnet_hash)
            else:
                new = [t for t in self.client.get_torrents() if t['hash'].lower() not in known]
                if new:
                    newest = max(new, key=lambda t: t.get('added_on', 0))
                    return self._handle(newest['hash'])
            log_debug(f"[QBT] Waiting for added torrent to appear (attempt {attempt + 1})")
            time.sleep(ADD_RESOLVE_DELAY)

        raise EngineError('added torrent did not appear in qBittorrent')

    def async_add_torrent(self, params):
        self._add(params)

    def remove_torrent(self, handle, delete_files=False):
        self.client.remove_torrents([handle.info_hash()], delete_files)

    def get_torrents(self):
        return [self._handle(t['hash']) for t in self.client.get_torrents()]

    def get_torrent_status(self, flags=StatusFlags.QUERY_DEFAULT):
        return [build_status(self.client, self._handle(t['hash']), t, flags) for t in self.client.get_torrents()]

    def status(self):
        info = self.client.get_transfer_info()
        torrents = self.client.get_torrents()
        paused = sum(1 for t in torrents if STATE_MAP.get(t.get('state', ''), UNKNOWN_STATE)[1])
        return SessionStatus(
            num_torrents=len(torrents),
            num_paused_torrents=paused,
            payload_download_rate=info.get('dl_info_speed', 0),
            payload_upload_rate=info.get('up_info_speed', 0),
            total_payload_download=info.get('dl_info_data', 0),
            total_payload_upload=info.get('up_info_data', 0),
        )

    def get_settings(self):
        prefs = self.client.get_preferences()
        utp = prefs.get('bittorrent_protocol', PROTOCOL_TCP_AND_UTP) != PROTOCOL_TCP
        pack = SettingsPack()
        # disk_cache is in MiB, -1 = automatic
        pack.set_int(SettingKey.CACHE_SIZE, max(prefs.get('disk_cache', 0), 0) * 1024 // 16)
        pack.set_int(SettingKey.ACTIVE_DOWNLOADS, prefs.get('max_active_downloads', 0))
        pack.set_int(SettingKey.ACTIVE_SEEDS, prefs.get('max_active_uploads', 0))
        pack.set_int(SettingKey.DOWNLOAD_RATE_LIMIT, max(prefs.get('dl_limit', 0), 0))
        pack.set_int(SettingKey.UPLOAD_RATE_LIMIT, max(prefs.get('up_limit', 0), 0))
        pack.set_bool(SettingKey.ENABLE_INCOMING_UTP, utp)
        pack.set_bool(SettingKey.ENABLE_OUTGOING_UTP, utp)
        pack.set_int(SettingKey.CONNECTIONS_LIMIT, prefs.get('max_connec', 0))
        pack.set_str(SettingKey.USER_AGENT, f"qBittorrent/{self.client.get_version().lstrip('v')}")
        return pack

    def apply_settings(self, pack):
        prefs = {}
        if SettingKey.CACHE_SIZE in pack:
            prefs['disk_cache'] = int(pack[SettingKey.CACHE_SIZE]) * 16 // 1024
        if SettingKey.ACTIVE_DOWNLOADS in pack:
            prefs['max_active_downloads'] = int(pack[SettingKey.ACTIVE_DOWNLOADS])
        if SettingKey.ACTIVE_SEEDS in pack:
            prefs['max_active_uploads'] = int(pack[SettingKey.ACTIVE_SEEDS])
        if SettingKey.DOWNLOAD_RATE_LIMIT in pack:
            prefs['dl_limit'] = int(pack[SettingKey.DOWNLOAD_RATE_LIMIT])
        if SettingKey.UPLOAD_RATE_LIMIT in pack:
            prefs['up_limit'] = int(pack[SettingKey.UPLOAD_RATE_LIMIT])
        if SettingKey.CONNECTIONS_LIMIT in pack:
            prefs['max_connec'] = int(pack[SettingKey.CONNECTIONS_LIMIT])
        if SettingKey.ENABLE_INCOMING_UTP in pack or SettingKey.ENABLE_OUTGOING_UTP in pack:
            utp = bool(pack.get(SettingKey.ENABLE_INCOMING_UTP) or pack.get(SettingKey.ENABLE_OUTGOING_UTP))
            prefs['bittorrent_protocol'] = PROTOCOL_TCP_AND_UTP if utp else PROTOCOL_TCP
        if SettingKey.USER_AGENT in pack:
            log_debug("[QBT] User agent is fixed by qBittorrent, ignoring")
        if prefs:
            self.client.set_preferences(prefs)

    def get_pe_settings(self):
        mode = self.client.get_preferences().get('encryption', ENCRYPTION_PREFER)
        if mode == ENCRYPTION_REQUIRE:
            return PeSettings(EncPolicy.FORCED, EncPolicy.FORCED, EncLevel.RC4, True)
        if mode == ENCRYPTION_DISABLE:
            return PeSettings(EncPolicy.DISABLED, EncPolicy.DISABLED, EncLevel.PLAINTEXT, False)
        return PeSettings(EncPolicy.ENABLED, EncPolicy.ENABLED, EncLevel.BOTH, self._prefer_rc4)

    def set_pe_settings(self, settings):
        if settings.in_enc_policy == EncPolicy.FORCED:
            mode = ENCRYPTION_REQUIRE
        elif settings.in_enc_policy == EncPolicy.DISABLED:
            mode = ENCRYPTION_DISABLE
        else:
            # qBittorrent cannot tell "preferred" from "tolerated"
            mode = ENCRYPTION_PREFER
            self._prefer_rc4 = settings.prefer_rc4
        self.client.set_preferences({'encryption': mode})

    def listen_on(self, port):
        self.client.set_preferences({'listen_port': port})

    def listen_port(self):
        return self.client.get_preferences().get('listen_port', 0)
