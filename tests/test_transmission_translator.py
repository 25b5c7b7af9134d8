"""Tests for state mapping and torrent-get field encoding."""

import base64
import hashlib

import pytest

from engine import (AnnounceEntry, EncLevel, EncPolicy, PeerInfo, PeSettings, StatusFlags, TorrentInfo,
                    TorrentState)
from json_tokens import JsonDocument, TokenType
from transmission_translator import (FIELD_PROVIDERS, TR_STATUS_CHECK, TR_STATUS_CHECK_WAIT,
                                     TR_STATUS_DOWNLOAD, TR_STATUS_DOWNLOAD_WAIT, TR_STATUS_SEED,
                                     TR_STATUS_SEED_WAIT, TR_STATUS_STOPPED, TR_TRACKER_ACTIVE,
                                     TR_TRACKER_INACTIVE, TR_TRACKER_QUEUED, TR_TRACKER_WAITING,
                                     TransmissionTranslator, apply_encryption, encryption_name,
                                     make_magnet_uri, pack_bitfield, torrent_tr_status, tr_file_priority,
                                     tracker_host, tracker_id, tracker_status)

ALL_FLAGS = StatusFlags.QUERY_NAME | StatusFlags.QUERY_TORRENT_FILE | StatusFlags.QUERY_PIECES


def make_status(session, **fields):
    handle = session.create_torrent(**fields)
    return handle.status(ALL_FLAGS)


class TestTorrentStatus:
    @pytest.mark.parametrize('state,paused,expected', [
        (TorrentState.CHECKING_RESUME_DATA, False, TR_STATUS_CHECK),
        (TorrentState.CHECKING_FILES, False, TR_STATUS_CHECK),
        (TorrentState.CHECKING_FILES, True, TR_STATUS_CHECK_WAIT),
        (TorrentState.DOWNLOADING_METADATA, False, TR_STATUS_DOWNLOAD),
        (TorrentState.DOWNLOADING, False, TR_STATUS_DOWNLOAD),
        (TorrentState.ALLOCATING, True, TR_STATUS_DOWNLOAD_WAIT),
        (TorrentState.SEEDING, False, TR_STATUS_SEED),
        (TorrentState.FINISHED, True, TR_STATUS_SEED_WAIT),
        (TorrentState.QUEUED_FOR_CHECKING, False, TR_STATUS_STOPPED),
    ])
    def test_auto_managed_states(self, session, state, paused, expected):
        status = make_status(session, state=state, paused=paused, auto_managed=True)
        assert torrent_tr_status(status) == expected

    def test_paused_and_unmanaged_is_stopped(self, session):
        status = make_status(session, state=TorrentState.SEEDING, paused=True, auto_managed=False)
        assert torrent_tr_status(status) == TR_STATUS_STOPPED

    def test_paused_download_then_seeding_after_resume(self, session):
        handle = session.create_torrent()
        handle.paused = True
        handle.state = TorrentState.DOWNLOADING
        assert torrent_tr_status(handle.status()) == TR_STATUS_DOWNLOAD_WAIT
        handle.state = TorrentState.SEEDING
        assert torrent_tr_status(handle.status()) == TR_STATUS_SEED_WAIT
        handle.resume()
        assert torrent_tr_status(handle.status()) == TR_STATUS_SEED


class TestTrackerStatus:
    def test_updating_wins(self, session):
        status = make_status(session, paused=True)
        assert tracker_status(AnnounceEntry('u', updating=True), status) == TR_TRACKER_ACTIVE

    def test_paused_torrent(self, session):
        status = make_status(session, paused=True)
        assert tracker_status(AnnounceEntry('u', verified=True, start_sent=True), status) == TR_TRACKER_INACTIVE

    def test_failure_limit(self, session):
        status = make_status(session)
        entry = AnnounceEntry('u', fails=3, fail_limit=3)
        assert tracker_status(entry, status) == TR_TRACKER_INACTIVE

    def test_no_failure_limit(self, session):
        status = make_status(session)
        entry = AnnounceEntry('u', fails=30, fail_limit=0)
        assert tracker_status(entry, status) == TR_TRACKER_QUEUED

    def test_waiting_and_queued(self, session):
        status = make_status(session)
        assert tracker_status(AnnounceEntry('u', verified=True, start_sent=True), status) == TR_TRACKER_WAITING
        assert tracker_status(AnnounceEntry('u', verified=True), status) == TR_TRACKER_QUEUED


class TestHelpers:
    @pytest.mark.parametrize('native,wire', [(0, 0), (1, -1), (2, 0), (3, 1), (6, 1), (7, 1)])
    def test_file_priority(self, native, wire):
        assert tr_file_priority(native) == wire

    def test_tracker_id(self):
        url = 'http://tracker.example.org/announce'
        digest = hashlib.sha1(url.encode()).digest()
        expected = 2 + (digest[0] << 8) + (digest[1] << 16) + (digest[2] << 24)
        assert tracker_id(AnnounceEntry(url, tier=2)) == expected

    def test_tracker_id_is_stable(self):
        assert tracker_id(AnnounceEntry('udp://a:80')) == tracker_id(AnnounceEntry('udp://a:80'))
        assert tracker_id(AnnounceEntry('udp://a:80')) != tracker_id(AnnounceEntry('udp://a:80', tier=1))

    def test_tracker_host(self):
        assert tracker_host('udp://tracker.example.org:6969/announce') == 'tracker.example.org'
        assert tracker_host('not a url') == ''

    def test_magnet_uri(self):
        info = TorrentInfo(info_hash='ab' * 20, name='my file', trackers=['udp://t:1/a'])
        assert make_magnet_uri(info) == (
            'magnet:?xt=urn:btih:' + 'ab' * 20 + '&dn=my%20file&tr=udp%3A%2F%2Ft%3A1%2Fa')

    def test_pack_bitfield(self):
        assert pack_bitfield([]) == b''
        assert pack_bitfield([True]) == b'\x80'
        assert pack_bitfield([True, False, True, False, False, False, False, False, True]) == b'\xa0\x80'

    @pytest.mark.parametrize('settings,name', [
        (PeSettings(EncPolicy.FORCED, EncPolicy.FORCED, EncLevel.RC4, True), 'required'),
        (PeSettings(EncPolicy.ENABLED, EncPolicy.ENABLED, EncLevel.BOTH, True), 'preferred'),
        (PeSettings(EncPolicy.ENABLED, EncPolicy.ENABLED, EncLevel.BOTH, False), 'tolerated'),
        (PeSettings(EncPolicy.DISABLED, EncPolicy.DISABLED, EncLevel.PLAINTEXT, False), 'tolerated'),
    ])
    def test_encryption_name(self, settings, name):
        assert encryption_name(settings) == name

    @pytest.mark.parametrize('name', ['required', 'preferred', 'tolerated'])
    def test_apply_encryption_round_trip(self, name):
        assert encryption_name(apply_encryption(PeSettings(), name)) == name

    def test_apply_unknown_encryption_is_tolerated(self):
        settings = apply_encryption(PeSettings(prefer_rc4=True), 'bogus')
        assert settings.prefer_rc4 is False
        assert settings.allowed_enc_level == EncLevel.BOTH


class TestStatusFlags:
    def test_name_only(self):
        assert TransmissionTranslator.status_flags_for({'id', 'name'}) == StatusFlags.QUERY_NAME

    def test_metadata_fields(self):
        flags = TransmissionTranslator.status_flags_for({'id', 'files'})
        assert flags & StatusFlags.QUERY_TORRENT_FILE
        assert not flags & StatusFlags.QUERY_PIECES

    def test_pieces(self):
        flags = TransmissionTranslator.status_flags_for({'pieces'})
        assert flags & StatusFlags.QUERY_PIECES


class TestFieldEncoder:
    @pytest.mark.parametrize('field', list(FIELD_PROVIDERS))
    def test_single_field_isolation(self, session, field):
        handle = session.create_torrent(trackers=['udp://tracker.example.org:80/announce'], piece_count=3)
        handle.peers = [PeerInfo('10.0.0.1', 51413)]
        status = handle.status(ALL_FLAGS)
        assert list(TransmissionTranslator.encode_torrent(status, {field}, now=1000)) == [field]

    def test_catalog_order_regardless_of_request(self, session):
        status = make_status(session)
        encoded = TransmissionTranslator.encode_torrent(status, {'status', 'name', 'id', 'activityDate'})
        assert list(encoded) == ['activityDate', 'id', 'name', 'status']

    def test_unknown_fields_dropped(self, session):
        status = make_status(session)
        assert TransmissionTranslator.encode_torrent(status, {'bogus', 'id'}) == {'id': status.handle.id}

    def test_without_metadata(self, session):
        handle = session.create_torrent(metadata=False, progress_ppm=250000)
        fields = {'comment', 'dateCreated', 'files', 'fileStats', 'magnetLink', 'metadataPercentComplete',
                  'pieceCount', 'pieceSize', 'priorities', 'sizeWhenDone', 'wanted', 'webseeds', 'pieces'}
        encoded = TransmissionTranslator.encode_torrent(handle.status(ALL_FLAGS), fields)
        assert encoded == {
            'comment': '',
            'dateCreated': 0,
            'magnetLink': '',
            'metadataPercentComplete': 0.25,
            'pieceCount': 0,
            'pieceSize': 0,
            'sizeWhenDone': 0,
            'files': [],
            'fileStats': [],
            'wanted': [],
            'priorities': [],
            'webseeds': [],
            'pieces': '',
        }

    def test_sentinels(self, session):
        status = make_status(session, download_payload_rate=0, all_time_download=0, all_time_upload=50)
        encoded = TransmissionTranslator.encode_torrent(status, {'eta', 'uploadedRatio', 'isStalled'})
        assert encoded == {'eta': -1, 'uploadedRatio': -2, 'isStalled': True}

    def test_eta_and_ratio(self, session):
        status = make_status(session, download_payload_rate=100, total_wanted=1000, total_wanted_done=400,
                             all_time_download=300, all_time_upload=700)
        encoded = TransmissionTranslator.encode_torrent(status, {'eta', 'uploadedRatio', 'leftUntilDone'})
        assert encoded == {'eta': 6, 'uploadedRatio': 2, 'leftUntilDone': 600}

    def test_error_flag_is_inverted(self, session):
        ok = make_status(session, name='ok')
        failed = make_status(session, name='failed', error='disk full')
        assert TransmissionTranslator.encode_torrent(ok, {'error', 'errorString'}) == {'error': 1, 'errorString': ''}
        assert TransmissionTranslator.encode_torrent(failed, {'error', 'errorString'}) == {
            'error': 0, 'errorString': 'disk full'}

    def test_totals_and_progress(self, session):
        status = make_status(session, progress_ppm=500000, total_done=1234)
        encoded = TransmissionTranslator.encode_torrent(status, {'percentDone', 'totalSize', 'sizeWhenDone'})
        assert encoded == {'percentDone': 0.5, 'totalSize': 1234, 'sizeWhenDone': 1000}

    def test_activity_date(self, session):
        status = make_status(session, time_since_download=30, time_since_upload=10)
        assert TransmissionTranslator.encode_torrent(status, {'activityDate'}, now=1000) == {'activityDate': 990}

    def test_limits(self, session):
        handle = session.create_torrent()
        handle.dl_limit = 50000
        encoded = TransmissionTranslator.encode_torrent(
            handle.status(), {'downloadLimit', 'downloadLimited', 'uploadLimit', 'uploadLimited', 'peer-limit'})
        assert encoded == {'downloadLimit': 50000, 'downloadLimited': True, 'uploadLimit': 0,
                           'uploadLimited': False, 'peer-limit': 50}

    def test_files(self, session):
        handle = session.create_torrent(files=[('a/one', 100), ('a/two', 200)])
        handle.progress = [100, 20]
        handle.priorities = [0, 7]
        encoded = TransmissionTranslator.encode_torrent(
            handle.status(ALL_FLAGS), {'files', 'fileStats', 'wanted', 'priorities'})
        assert encoded == {
            'files': [
                {'bytesCompleted': 100, 'length': 100, 'name': 'a/one'},
                {'bytesCompleted': 20, 'length': 200, 'name': 'a/two'},
            ],
            'fileStats': [
                {'bytesCompleted': 100, 'wanted': False, 'priority': 0},
                {'bytesCompleted': 20, 'wanted': True, 'priority': 1},
            ],
            'wanted': [False, True],
            'priorities': [0, 1],
        }

    def test_pieces(self, session):
        handle = session.create_torrent(piece_count=10)
        handle.pieces = [True] * 9 + [False]
        encoded = TransmissionTranslator.encode_torrent(handle.status(ALL_FLAGS), {'pieces', 'pieceCount'})
        assert encoded == {'pieceCount': 10, 'pieces': base64.b64encode(b'\xff\x80').decode()}

    def test_hash_and_magnet(self, session):
        status = make_status(session, name='x')
        encoded = TransmissionTranslator.encode_torrent(status, {'hashString', 'magnetLink'})
        assert encoded['hashString'] == status.info_hash
        assert encoded['magnetLink'].startswith('magnet:?xt=urn:btih:' + status.info_hash)

    def test_trackers(self, session):
        url = 'udp://tracker.example.org:80/announce'
        handle = session.create_torrent(trackers=[url])
        handle.announce_entries = [AnnounceEntry(url, tier=1, start_sent=True, next_announce_in=60)]
        encoded = TransmissionTranslator.encode_torrent(handle.status(), {'trackers', 'trackerStats'}, now=1000)
        assert encoded['trackers'] == [
            {'announce': url, 'id': tracker_id(handle.announce_entries[0]), 'scrape': url, 'tier': 1}]
        stats = encoded['trackerStats'][0]
        assert stats['host'] == 'tracker.example.org'
        assert stats['hasAnnounced'] is True
        assert stats['lastAnnounceSucceeded'] is True
        assert stats['nextAnnounceTime'] == 1060
        assert stats['announceState'] == TR_TRACKER_QUEUED
        assert stats['seederCount'] == 0

    def test_peers(self, session):
        handle = session.create_torrent()
        handle.peers = [PeerInfo('10.0.0.1', 6881, client='Test 1.0', downloading=True, utp=True,
                                 progress=0.5, down_speed=10, up_speed=20)]
        peer = TransmissionTranslator.encode_torrent(handle.status(), {'peers'})['peers'][0]
        assert peer['address'] == '10.0.0.1'
        assert peer['port'] == 6881
        assert peer['clientName'] == 'Test 1.0'
        assert peer['isDownloadingFrom'] is True
        assert peer['isUTP'] is True
        assert peer['rateToClient'] == 10
        assert peer['rateToPeer'] == 20


class TestTorrentIds:
    def selection(self, body):
        doc = JsonDocument(body)
        return TransmissionTranslator.get_torrent_ids(doc, doc.root)

    def test_absent_selects_all(self):
        assert self.selection(b'{}').all

    @pytest.mark.parametrize('body', [b'{"ids": null}', b'{"ids": 0}', b'{"ids": []}',
                                      b'{"ids": "recently-active"}'])
    def test_all(self, body):
        assert self.selection(body).all

    def test_single(self):
        selection = self.selection(b'{"ids": 7}')
        assert selection.ids == {7}
        assert selection.matches(7, 'x')
        assert not selection.matches(8, 'x')

    def test_array_with_hashes(self):
        selection = self.selection(b'{"ids": [1, 2, "' + b'AB' * 20 + b'"]}')
        assert selection.ids == {1, 2}
        assert selection.matches(99, 'ab' * 20)

    def test_single_hash(self):
        selection = self.selection(b'{"ids": "' + b'cd' * 20 + b'"}')
        assert selection.hashes == {'cd' * 20}
        assert not selection.all

    @pytest.mark.parametrize('body', [b'{"ids": ["bogus"]}', b'{"ids": ["recently-active"]}',
                                      b'{"ids": [{"id": 1}]}'])
    def test_unparseable_entries_select_nothing(self, body):
        selection = self.selection(body)
        assert not selection.all
        assert not selection.matches(1, 'ab' * 20)

    def test_unparseable_entries_do_not_widen(self):
        selection = self.selection(b'{"ids": ["bogus", 3, "4"]}')
        assert selection.ids == {3, 4}
        assert not selection.matches(5, 'ab' * 20)

    def test_array_type_checked(self):
        doc = JsonDocument(b'{"ids": {"a": 1}}')
        assert doc.find_key(doc.root, 'ids', TokenType.ARRAY) is None
        assert TransmissionTranslator.get_torrent_ids(doc, doc.root).all
