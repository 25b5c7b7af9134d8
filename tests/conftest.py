"""Shared fixtures: an in-memory engine and adapter instances on top of it."""

import hashlib
import json
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import pytest

from auth import FullPermissions
from bridge import create_app
from engine import (PRIORITY_NORMAL, AnnounceEntry, EngineError, FileEntry, PeerInfo, PeSettings, Session,
                    SessionStatus, SettingKey, SettingsPack, StatusFlags, TorrentAlreadyAdded, TorrentHandle,
                    TorrentInfo, TorrentState, TorrentStatus)
from json_tokens import JsonDocument
from qbittorrent_client import magnet_info_hash
from transmission_webui import TransmissionWebUI


class FakeTorrentHandle(TorrentHandle):
    def __init__(self, session: 'FakeSession', torrent_id: int, info_hash: str, name: str = '',
                 info: Optional[TorrentInfo] = None, save_path: str = '.'):
        self.session = session
        self._id = torrent_id
        self._hash = info_hash
        self.name = name
        self.info = info
        self.save_path = save_path
        self.state = TorrentState.DOWNLOADING
        self.paused = False
        self.managed = True
        self.dl_limit = 0
        self.ul_limit = 0
        self.connections = 50
        files = info.files if info else []
        self.priorities = [PRIORITY_NORMAL] * len(files)
        self.progress = [0] * len(files)
        self.announce_entries: List[AnnounceEntry] = [AnnounceEntry(url) for url in (info.trackers if info else [])]
        self.peers: List[PeerInfo] = []
        self.pieces: List[bool] = [False] * (info.num_pieces if info else 0)
        self.rechecks = 0
        self.reannounces = 0
        self.fields: Dict = {}

    @property
    def id(self):
        return self._id

    def info_hash(self):
        return self._hash

    def status(self, flags=StatusFlags.QUERY_DEFAULT):
        self.session.status_flags.append(flags)
        status = TorrentStatus(
            handle=self,
            info_hash=self._hash,
            name=self.name,
            save_path=self.save_path,
            state=self.state,
            paused=self.paused,
            auto_managed=self.managed,
            has_metadata=self.info is not None,
        )
        for key, value in self.fields.items():
            setattr(status, key, value)
        if flags & StatusFlags.QUERY_TORRENT_FILE:
            status.torrent_file = self.info
        if flags & StatusFlags.QUERY_PIECES:
            status.pieces = list(self.pieces)
        return status

    def pause(self):
        self.paused = True

    def resume(self):
        self.paused = False

    def auto_managed(self, enabled):
        self.managed = enabled

    def force_recheck(self):
        self.rechecks += 1

    def force_reannounce(self):
        self.reannounces += 1

    def download_limit(self):
        return self.dl_limit

    def set_download_limit(self, limit):
        self.dl_limit = limit

    def upload_limit(self):
        return self.ul_limit

    def set_upload_limit(self, limit):
        self.ul_limit = limit

    def max_connections(self):
        return self.connections

    def set_max_connections(self, limit):
        self.connections = limit

    def move_storage(self, save_path):
        self.save_path = save_path

    def file_priorities(self):
        return list(self.priorities)

    def prioritize_files(self, priorities):
        self.priorities = list(priorities)

    def file_progress(self):
        return list(self.progress)

    def trackers(self):
        return list(self.announce_entries)

    def replace_trackers(self, trackers):
        self.announce_entries = list(trackers)

    def get_peer_info(self):
        return list(self.peers)


class FakeSession(Session):
    """Engine double keeping everything in memory and recording calls"""

    def __init__(self):
        self.torrents: List[FakeTorrentHandle] = []
        self.next_id = 1
        self.settings = SettingsPack({
            SettingKey.CACHE_SIZE: 1024,
            SettingKey.ACTIVE_DOWNLOADS: 3,
            SettingKey.ACTIVE_SEEDS: 5,
            SettingKey.DOWNLOAD_RATE_LIMIT: 0,
            SettingKey.UPLOAD_RATE_LIMIT: 0,
            SettingKey.ENABLE_INCOMING_UTP: True,
            SettingKey.ENABLE_OUTGOING_UTP: True,
            SettingKey.CONNECTIONS_LIMIT: 200,
            SettingKey.USER_AGENT: 'FakeEngine/1.0',
        })
        self.pe_settings = PeSettings()
        self.port = 6881
        self.added = []
        self.async_added = []
        self.removed = []
        self.applied = []
        self.status_flags = []
        self.session_status = SessionStatus()

    def create_torrent(self, name='test torrent', files=None, trackers=None, piece_count=0,
                       metadata=True, **fields) -> FakeTorrentHandle:
        """Put a torrent straight into the session"""
        info_hash = hashlib.sha1(name.encode('utf-8')).hexdigest()
        info = None
        if metadata:
            files = files if files is not None else [('file.bin', 1000)]
            info = TorrentInfo(
                info_hash=info_hash,
                name=name,
                num_pieces=piece_count,
                piece_length=16384,
                total_size=sum(size for _, size in files),
                files=[FileEntry(path, size) for path, size in files],
                trackers=list(trackers or []),
            )
        handle = FakeTorrentHandle(self, self.next_id, info_hash, name, info)
        handle.fields.update(fields)
        self.next_id += 1
        self.torrents.append(handle)
        return handle

    def _find(self, info_hash: str) -> Optional[FakeTorrentHandle]:
        for handle in self.torrents:
            if handle.info_hash() == info_hash:
                return handle
        return None

    def add_torrent(self, params):
        self.added.append(params)
        name = ''
        info = None
        if params.url.startswith('magnet:'):
            info_hash = magnet_info_hash(params.url)
            if info_hash is None:
                raise EngineError('invalid magnet link')
            name = parse_qs(urlparse(params.url).query).get('dn', [''])[0]
        elif params.url:
            info_hash = hashlib.sha1(params.url.encode('utf-8')).hexdigest()
        else:
            if not params.metainfo or not params.metainfo.startswith(b'd'):
                raise EngineError('invalid bencoding')
            info_hash = hashlib.sha1(params.metainfo).hexdigest()
            name = 'uploaded torrent'
            info = TorrentInfo(info_hash=info_hash, name=name, files=[FileEntry('a.bin', 10)])

        existing = self._find(info_hash)
        if existing is not None:
            raise TorrentAlreadyAdded(existing)

        handle = FakeTorrentHandle(self, self.next_id, info_hash, name, info, params.save_path)
        handle.paused = params.paused
        handle.managed = params.auto_managed
        self.next_id += 1
        self.torrents.append(handle)
        return handle

    def async_add_torrent(self, params):
        self.async_added.append(params)

    def remove_torrent(self, handle, delete_files=False):
        self.removed.append((handle.info_hash(), delete_files))
        self.torrents.remove(handle)

    def get_torrents(self):
        return list(self.torrents)

    def get_torrent_status(self, flags=StatusFlags.QUERY_DEFAULT):
        return [handle.status(flags) for handle in self.torrents]

    def status(self):
        return self.session_status

    def get_settings(self):
        return SettingsPack(self.settings)

    def apply_settings(self, pack):
        self.applied.append(dict(pack))
        self.settings.update(pack)

    def get_pe_settings(self):
        return PeSettings(**vars(self.pe_settings))

    def set_pe_settings(self, settings):
        self.pe_settings = PeSettings(**vars(settings))

    def listen_on(self, port):
        self.port = port

    def listen_port(self):
        return self.port


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def webui(session):
    return TransmissionWebUI(session)


@pytest.fixture
def rpc(webui):
    """Run one request dict through the dispatcher and decode the response"""
    def call(request, permissions=None):
        doc = JsonDocument(json.dumps(request).encode('utf-8'))
        response = webui.handle_json_rpc(doc, permissions or FullPermissions())
        return json.loads(response.to_bytes())
    return call


@pytest.fixture
def client(webui):
    app = create_app(webui)
    app.config['TESTING'] = True
    return app.test_client()
