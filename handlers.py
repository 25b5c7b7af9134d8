"""
RPC method handlers for the Transmission protocol
"""

import base64
import binascii
import shutil
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from auth import ADAPTER_SETTINGS, PermissionsInterface
from engine import (PRIORITY_DONT_DOWNLOAD, PRIORITY_HIGH, PRIORITY_LOW, PRIORITY_NORMAL, AnnounceEntry,
                    SettingKey, SettingsPack, StatusFlags, TorrentAlreadyAdded, TorrentHandle)
from json_tokens import JsonDocument, TokenType
from logging_utils import log_debug, log_error, log_info, log_trace, log_warning
from response_buffer import ResponseBuffer
from transmission_translator import TransmissionTranslator, apply_encryption, encryption_name, tracker_id

RPC_VERSION = 15
RPC_VERSION_MINIMUM = 1

URL_PREFIXES = ('http://', 'https://', 'magnet:')

# Rate used when a speed limit is switched on without a value, bytes/s.
# The engine keeps a single number per limit, 0 meaning disabled, so the
# previous rate cannot be remembered across a disable.
PLACEHOLDER_RATE_LIMIT = 100000

# torrent-set file priority arguments, applied in this order
FILE_PRIORITY_ARGUMENTS = (
    ('files-unwanted', PRIORITY_DONT_DOWNLOAD),
    ('files-wanted', PRIORITY_NORMAL),
    ('priority-high', PRIORITY_HIGH),
    ('priority-low', PRIORITY_LOW),
    ('priority-normal', PRIORITY_NORMAL),
)

# session-set keys accepted without effect
IGNORED_SESSION_KEYS = frozenset([
    'alt-speed-down', 'alt-speed-enabled', 'alt-speed-time-begin', 'alt-speed-time-enabled',
    'alt-speed-time-end', 'alt-speed-time-day', 'alt-speed-up', 'blocklist-url', 'blocklist-enabled',
    'blocklist-size', 'config-dir', 'download-queue-enabled', 'seed-queue-enabled', 'units',
    'trash-original-torrent-files',
])

UNITS = {
    'speed-units': ['kB/s', 'MB/s', 'GB/s', 'TB/s'],
    'speed-bytes': [1000, 1000000, 1000000000, 1000000000000],
    'size-units': ['kB', 'MB', 'GB', 'TB'],
    'size-bytes': [1000, 1000000, 1000000000, 1000000000000],
    'memory-units': ['kB', 'MB', 'GB', 'TB'],
    'memory-bytes': [1000, 1000000, 1000000000, 1000000000000],
}


@dataclass
class RpcCall:
    """One dispatched request: parsed body, arguments object, tag and caller"""
    method: str
    doc: JsonDocument
    args: Optional[int]
    tag: int
    permissions: PermissionsInterface
    response: ResponseBuffer


def free_disk_space(path: str) -> int:
    """Free bytes on the volume holding path, -1 if it cannot be determined"""
    try:
        return shutil.disk_usage(path).free
    except OSError as e:
        log_debug(f"[SESSION] Cannot stat {path}: {e}")
        return -1


def deny(call: RpcCall):
    log_info(f"[RPC] Permission denied for {call.method}")
    call.response.fail('permission denied', call.tag)


def select_torrents(webui, call: RpcCall) -> List[TorrentHandle]:
    """Handles named by the request's 'ids' argument"""
    selection = TransmissionTranslator.get_torrent_ids(call.doc, call.args)
    handles = webui.session.get_torrents()
    if selection.all:
        return handles
    return [h for h in handles if selection.matches(h.id, h.info_hash())]


def handle_torrent_add(webui, call: RpcCall):
    """Handle torrent-add method"""
    log_info("[RPC] torrent-add")
    if not call.permissions.allow_add():
        return deny(call)

    doc, args = call.doc, call.args
    params = webui.add_torrent_params()

    save_path = doc.find_string(args, 'download-dir')
    if save_path:
        params.save_path = save_path

    paused = doc.find_bool(args, 'paused', None)
    if paused is not None:
        params.paused = paused
        params.auto_managed = not paused
        log_debug(f"[RPC] Paused: {paused}")

    filename = doc.find_string(args, 'filename')
    if filename.startswith(URL_PREFIXES):
        params.url = filename
        log_debug(f"[RPC] Adding from URL: {filename}")
    elif filename:
        log_debug(f"[RPC] Adding from file: {filename}")
        try:
            with open(filename, 'rb') as f:
                params.metainfo = f.read()
        except OSError as e:
            call.response.fail(e.strerror or str(e), call.tag)
            return
    else:
        try:
            params.metainfo = base64.b64decode(doc.find_string(args, 'metainfo'))
        except (binascii.Error, ValueError):
            call.response.fail('invalid metainfo encoding', call.tag)
            return
        if not params.metainfo:
            call.response.fail("missing 'filename' or 'metainfo' argument", call.tag)
            return
        log_debug(f"[RPC] Adding from metainfo ({len(params.metainfo)} bytes)")

    try:
        handle = webui.session.add_torrent(params)
    except TorrentAlreadyAdded as e:
        log_info(f"[RPC] Torrent already added: {e.handle.info_hash()}")
        call.response.success(call.tag, {'torrent-duplicate': _added_torrent(e.handle)})
        return

    added = _added_torrent(handle)
    log_info(f"[RPC] Torrent added: {added['name'] or added['hashString']}")
    call.response.success(call.tag, {'torrent-added': added})


def _added_torrent(handle: TorrentHandle) -> Dict:
    status = handle.status(StatusFlags.QUERY_NAME)
    return {
        'hashString': status.info_hash.lower(),
        'id': handle.id,
        'name': status.name,
    }


def handle_torrent_get(webui, call: RpcCall):
    """Handle torrent-get method"""
    log_info("[RPC] torrent-get")
    if not call.permissions.allow_list():
        return deny(call)

    doc, args = call.doc, call.args
    fields = set(doc.string_array(doc.find_key(args, 'fields', TokenType.ARRAY)))
    if not fields:
        call.response.fail("missing 'field' argument", call.tag)
        return
    log_trace(f"[RPC] Requested fields: {sorted(fields)}")

    selection = TransmissionTranslator.get_torrent_ids(doc, args)
    flags = TransmissionTranslator.status_flags_for(fields)
    now = int(time.time())

    torrents = []
    for status in webui.session.get_torrent_status(flags):
        if not selection.matches(status.handle.id, status.info_hash):
            continue
        torrents.append(TransmissionTranslator.encode_torrent(status, fields, now))

    log_debug(f"[RPC] Returning {len(torrents)} torrent(s)")
    call.response.success(call.tag, {'torrents': torrents})


def _limit_argument(doc: JsonDocument, args: Optional[int], value_key: str, flag_key: str) -> Optional[int]:
    """kB/s limit to apply, None to leave it alone; a false flag forces 0"""
    limit = doc.find_int(args, value_key, None)
    if doc.find_bool(args, flag_key, None) is False:
        return 0
    return limit


def handle_torrent_set(webui, call: RpcCall):
    """Handle torrent-set method

    Every section applies independently to each selected torrent; an
    engine error part way through leaves earlier changes in place.
    """
    log_info("[RPC] torrent-set")
    if not call.permissions.allow_set_settings(ADAPTER_SETTINGS):
        return deny(call)

    doc, args = call.doc, call.args
    log_trace(f"[RPC] Arguments: {doc.text(args)}")

    download_limit = _limit_argument(doc, args, 'downloadLimit', 'downloadLimited')
    upload_limit = _limit_argument(doc, args, 'uploadLimit', 'uploadLimited')
    location = doc.find_string(args, 'location', None)
    max_connections = doc.find_int(args, 'peer-limit', None)

    add_trackers = doc.string_array(doc.find_key(args, 'trackerAdd', TokenType.ARRAY))
    remove_trackers = set(doc.int_array(doc.find_key(args, 'trackerRemove', TokenType.ARRAY)))
    replace_tracker = None
    replace_index = doc.find_key(args, 'trackerReplace', TokenType.ARRAY)
    if replace_index is not None:
        items = list(doc.children(replace_index))
        if len(items) >= 2 and doc.type_of(items[1]) == TokenType.STRING:
            replace_tracker = (doc.int_value(items[0]), doc.string_value(items[1]))
        else:
            log_warning("[RPC] Invalid trackerReplace format, expected [tracker_id, new_url]")

    all_files_priority = None
    file_priorities = []
    for key, priority in FILE_PRIORITY_ARGUMENTS:
        index = doc.find_key(args, key, TokenType.ARRAY)
        if index is None:
            continue
        indices = doc.int_array(index)
        if not indices:
            all_files_priority = priority
        file_priorities.extend((i, priority) for i in indices)

    for handle in select_torrents(webui, call):
        if download_limit is not None:
            handle.set_download_limit(download_limit * 1000)
        if upload_limit is not None:
            handle.set_upload_limit(upload_limit * 1000)
        if location is not None:
            handle.move_storage(location)
        if max_connections is not None:
            handle.set_max_connections(max_connections)

        if add_trackers or remove_trackers or replace_tracker:
            trackers = _edit_trackers(handle.trackers(), add_trackers, remove_trackers, replace_tracker)
            handle.replace_trackers(trackers)

        if all_files_priority is not None or file_priorities:
            priorities = handle.file_priorities()
            if all_files_priority is not None:
                priorities = [all_files_priority] * len(priorities)
            for index, priority in file_priorities:
                if 0 <= index < len(priorities):
                    priorities[index] = priority
            log_debug(f"[RPC] File priorities for {handle.info_hash()}: {priorities}")
            handle.prioritize_files(priorities)

    call.response.success(call.tag)


def _edit_trackers(trackers: List[AnnounceEntry], add: List[str], remove: set, replace) -> List[AnnounceEntry]:
    result = [t for t in trackers if tracker_id(t) not in remove]
    if replace is not None:
        replace_id, new_url = replace
        result = [AnnounceEntry(new_url, tier=t.tier) if tracker_id(t) == replace_id else t for t in result]
    known = {t.url for t in result}
    for url in add:
        if url not in known:
            result.append(AnnounceEntry(url))
            known.add(url)
    return result


def handle_torrent_start(webui, call: RpcCall):
    log_info("[RPC] torrent-start")
    if not call.permissions.allow_start():
        return deny(call)
    for handle in select_torrents(webui, call):
        handle.auto_managed(True)
        handle.resume()
    call.response.success(call.tag)


def handle_torrent_start_now(webui, call: RpcCall):
    """Start without going through the queue"""
    log_info("[RPC] torrent-start-now")
    if not call.permissions.allow_start():
        return deny(call)
    for handle in select_torrents(webui, call):
        handle.auto_managed(False)
        handle.resume()
    call.response.success(call.tag)


def handle_torrent_stop(webui, call: RpcCall):
    log_info("[RPC] torrent-stop")
    if not call.permissions.allow_stop():
        return deny(call)
    for handle in select_torrents(webui, call):
        handle.auto_managed(False)
        handle.pause()
    call.response.success(call.tag)


def handle_torrent_verify(webui, call: RpcCall):
    log_info("[RPC] torrent-verify")
    if not call.permissions.allow_recheck():
        return deny(call)
    for handle in select_torrents(webui, call):
        handle.force_recheck()
    call.response.success(call.tag)


def handle_torrent_reannounce(webui, call: RpcCall):
    log_info("[RPC] torrent-reannounce")
    if not call.permissions.allow_start():
        return deny(call)
    for handle in select_torrents(webui, call):
        handle.force_reannounce()
    call.response.success(call.tag)


def handle_torrent_remove(webui, call: RpcCall):
    log_info("[RPC] torrent-remove")
    if not call.permissions.allow_remove():
        return deny(call)
    delete_data = call.doc.find_bool(call.args, 'delete-local-data')
    log_debug(f"[RPC] Delete local data: {delete_data}")
    for handle in select_torrents(webui, call):
        webui.session.remove_torrent(handle, delete_files=delete_data)
    call.response.success(call.tag)


def handle_torrent_set_location(webui, call: RpcCall):
    """Handle torrent-set-location method"""
    log_info("[RPC] torrent-set-location")
    if not call.permissions.allow_set_settings(ADAPTER_SETTINGS):
        return deny(call)

    location = call.doc.find_string(call.args, 'location')
    if not location:
        call.response.fail("missing 'location' argument", call.tag)
        return

    # storage is always moved together with the files
    if call.doc.find_bool(call.args, 'move', True) is False:
        log_warning("[RPC] torrent-set-location: 'move=false' not supported, moving files")

    for handle in select_torrents(webui, call):
        handle.move_storage(location)
    call.response.success(call.tag)


def handle_session_stats(webui, call: RpcCall):
    """Handle session-stats method

    The engine keeps no history across restarts, so cumulative-stats
    repeats the current session counters.
    """
    log_info("[RPC] session-stats")
    if not call.permissions.allow_session_status():
        return deny(call)

    st = webui.session.status()
    seconds_active = int(time.time()) - webui.start_time

    def stats_block():
        return {
            'uploadedBytes': st.total_payload_upload,
            'downloadedBytes': st.total_payload_download,
            'filesAdded': st.num_torrents,
            'sessionCount': 1,
            'secondsActive': seconds_active,
        }

    log_debug(f"[RPC] Stats - Total: {st.num_torrents}, Paused: {st.num_paused_torrents}")
    call.response.success(call.tag, {
        'activeTorrentCount': st.num_torrents - st.num_paused_torrents,
        'downloadSpeed': st.payload_download_rate,
        'pausedTorrentCount': st.num_paused_torrents,
        'torrentCount': st.num_torrents,
        'uploadSpeed': st.payload_upload_rate,
        'cumulative-stats': stats_block(),
        'current-stats': stats_block(),
    })


def handle_session_get(webui, call: RpcCall):
    """Handle session-get method"""
    log_info("[RPC] session-get")
    if not call.permissions.allow_get_settings(ADAPTER_SETTINGS):
        return deny(call)

    session = webui.session
    sett = session.get_settings()
    pes = session.get_pe_settings()
    params = webui.add_torrent_params()
    download_rate = sett.get_int(SettingKey.DOWNLOAD_RATE_LIMIT)
    upload_rate = sett.get_int(SettingKey.UPLOAD_RATE_LIMIT)

    call.response.success(call.tag, {
        'alt-speed-down': 0,
        'alt-speed-enabled': False,
        'alt-speed-time-begin': 0,
        'alt-speed-time-enabled': False,
        'alt-speed-time-end': 0,
        'alt-speed-time-day': 0,
        'alt-speed-up': 0,
        'blocklist-url': '',
        'blocklist-enabled': False,
        'blocklist-size': 0,
        'cache-size-mb': sett.get_int(SettingKey.CACHE_SIZE) * 16 // 1024,
        'config-dir': '',
        'download-dir': params.save_path,
        'download-dir-free-space': free_disk_space(params.save_path),
        'download-queue-size': sett.get_int(SettingKey.ACTIVE_DOWNLOADS),
        'download-queue-enabled': True,
        'seed-queue-size': sett.get_int(SettingKey.ACTIVE_SEEDS),
        'seed-queue-enabled': True,
        'speed-limit-down': download_rate // 1000,
        'speed-limit-up': upload_rate // 1000,
        'speed-limit-down-enabled': download_rate > 0,
        'speed-limit-up-enabled': upload_rate > 0,
        'start-added-torrents': params.auto_managed or not params.paused,
        'units': UNITS,
        'utp-enabled': (sett.get_bool(SettingKey.ENABLE_INCOMING_UTP)
                        or sett.get_bool(SettingKey.ENABLE_OUTGOING_UTP)),
        'version': sett.get_str(SettingKey.USER_AGENT),
        'peer-port': session.listen_port(),
        'peer-limit-global': sett.get_int(SettingKey.CONNECTIONS_LIMIT),
        'encryption': encryption_name(pes),
        'rpc-version': RPC_VERSION,
        'rpc-version-minimum': RPC_VERSION_MINIMUM,
    })


def handle_session_set(webui, call: RpcCall):
    """Handle session-set method

    download-dir, start-added-torrents, peer-port and encryption take
    effect as they are read. Everything else is collected into one
    settings pack applied after the last key. Keys the caller may not
    set are skipped without failing the request.
    """
    log_info("[RPC] session-set")
    doc, perms = call.doc, call.permissions
    session = webui.session
    pack = SettingsPack()
    # per rate limit key: True = switched on, False = switched off
    limit_switches: Dict[SettingKey, bool] = {}

    for key_index, value_index in doc.items(call.args):
        if doc.type_of(key_index) != TokenType.STRING:
            continue
        key = doc.string_value(key_index)
        log_trace(f"[SESSION] {key}: {doc.text(value_index)}")

        if key in IGNORED_SESSION_KEYS:
            log_debug(f"[SESSION] Ignoring setting: {key}")

        elif key == 'cache-size-mb':
            if not perms.allow_set_settings(SettingKey.CACHE_SIZE):
                continue
            # MiB to 16 kiB blocks
            pack.set_int(SettingKey.CACHE_SIZE, doc.int_value(value_index) * 1024 // 16)

        elif key == 'download-dir':
            if not perms.allow_set_settings(ADAPTER_SETTINGS):
                continue
            webui.set_save_path(doc.string_value(value_index))

        elif key == 'download-queue-size':
            if not perms.allow_set_settings(SettingKey.ACTIVE_DOWNLOADS):
                continue
            pack.set_int(SettingKey.ACTIVE_DOWNLOADS, doc.int_value(value_index))

        elif key == 'seed-queue-size':
            if not perms.allow_set_settings(SettingKey.ACTIVE_SEEDS):
                continue
            pack.set_int(SettingKey.ACTIVE_SEEDS, doc.int_value(value_index))

        elif key in ('speed-limit-down', 'speed-limit-up'):
            setting = SettingKey.DOWNLOAD_RATE_LIMIT if key == 'speed-limit-down' else SettingKey.UPLOAD_RATE_LIMIT
            if not perms.allow_set_settings(setting):
                continue
            pack.set_int(setting, doc.int_value(value_index) * 1000)

        elif key in ('speed-limit-down-enabled', 'speed-limit-up-enabled'):
            setting = (SettingKey.DOWNLOAD_RATE_LIMIT if key == 'speed-limit-down-enabled'
                       else SettingKey.UPLOAD_RATE_LIMIT)
            if not perms.allow_set_settings(setting):
                continue
            limit_switches[setting] = doc.bool_value(value_index)

        elif key == 'start-added-torrents':
            if not perms.allow_set_settings(ADAPTER_SETTINGS):
                continue
            webui.set_start_added_torrents(doc.bool_value(value_index))

        elif key == 'peer-port':
            if not perms.allow_set_settings(ADAPTER_SETTINGS):
                continue
            port = doc.int_value(value_index)
            session.listen_on(port)
            if webui.settings is not None:
                webui.settings.set_int('listen_port', port)
            log_debug(f"[SESSION] Listening on port {port}")

        elif key == 'utp-enabled':
            if not (perms.allow_set_settings(SettingKey.ENABLE_INCOMING_UTP)
                    and perms.allow_set_settings(SettingKey.ENABLE_OUTGOING_UTP)):
                continue
            utp = doc.bool_value(value_index)
            pack.set_bool(SettingKey.ENABLE_OUTGOING_UTP, utp)
            pack.set_bool(SettingKey.ENABLE_INCOMING_UTP, utp)

        elif key == 'peer-limit-global':
            if not perms.allow_set_settings(SettingKey.CONNECTIONS_LIMIT):
                continue
            pack.set_int(SettingKey.CONNECTIONS_LIMIT, doc.int_value(value_index))

        elif key == 'encryption':
            if not perms.allow_set_settings(ADAPTER_SETTINGS):
                continue
            pes = apply_encryption(session.get_pe_settings(), doc.string_value(value_index))
            session.set_pe_settings(pes)
            log_debug(f"[SESSION] Encryption: {encryption_name(pes)}")

        else:
            log_warning(f"[SESSION] Unhandled setting: {key}: {doc.text(value_index)}")

    for setting, enabled in limit_switches.items():
        if not enabled:
            pack.set_int(setting, 0)
        elif setting not in pack:
            pack.set_int(setting, PLACEHOLDER_RATE_LIMIT)

    if pack:
        log_debug(f"[SESSION] Applying {len(pack)} setting(s)")
        session.apply_settings(pack)

    if webui.settings is not None:
        try:
            webui.settings.save()
        except OSError as e:
            log_error(f"[SETTINGS] Could not save {webui.settings.path}: {e}")

    call.response.success(call.tag)


def handle_free_space(webui, call: RpcCall):
    """Handle free-space method"""
    log_info("[RPC] free-space")
    if not call.permissions.allow_get_settings(ADAPTER_SETTINGS):
        return deny(call)

    path = call.doc.find_string(call.args, 'path')
    if not path:
        call.response.fail("missing 'path' argument", call.tag)
        return

    free_space = free_disk_space(path)
    log_debug(f"[RPC] Free space on {path}: {free_space} bytes")
    call.response.success(call.tag, {'path': path, 'size-bytes': free_space})


METHODS: Dict[str, Callable] = {
    'torrent-add': handle_torrent_add,
    'torrent-get': handle_torrent_get,
    'torrent-set': handle_torrent_set,
    'torrent-start': handle_torrent_start,
    'torrent-start-now': handle_torrent_start_now,
    'torrent-stop': handle_torrent_stop,
    'torrent-verify': handle_torrent_verify,
    'torrent-reannounce': handle_torrent_reannounce,
    'torrent-remove': handle_torrent_remove,
    'torrent-set-location': handle_torrent_set_location,
    'session-stats': handle_session_stats,
    'session-get': handle_session_get,
    'session-set': handle_session_set,
    'free-space': handle_free_space,
}
