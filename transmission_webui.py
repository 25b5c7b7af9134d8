"""
Transmission RPC front door: request dispatch and HTTP handling
"""

import dataclasses
import json
import threading
import time
import traceback
from typing import Optional

from flask import Response

from auth import AuthInterface, NoAuth, PermissionsInterface, parse_http_auth
from engine import AddTorrentParams, EngineError, Session
from handlers import METHODS, RpcCall
from json_tokens import InvalidJson, JsonDocument, JsonTokenError, TokenType, TooManyTokens, TruncatedJson
from logging_utils import log_debug, log_error, log_info, log_trace, log_warning
from response_buffer import ResponseBuffer
from settings_store import SettingsStore

RPC_PATHS = ('/transmission/rpc', '/rpc')
UPLOAD_PATH = '/upload'

MAX_BODY_SIZE = 10 * 1024 * 1024

JSON_CONTENT_TYPE = 'text/json'
AUTH_REALM = 'Basic realm="BitTorrent"'


def _token_error_message(error: JsonTokenError) -> str:
    if isinstance(error, InvalidJson):
        return 'request not JSON'
    if isinstance(error, TooManyTokens):
        return 'request too big'
    if isinstance(error, TruncatedJson):
        return 'request truncated'
    return 'invalid request'


class TransmissionWebUI:
    """Serves the Transmission RPC protocol on top of an engine session

    Holds the template used for newly added torrents. The template's
    save path and the session's listen port are restored from the
    settings store, when there is one.
    """

    def __init__(self, session: Session, settings: Optional[SettingsStore] = None,
                 auth: Optional[AuthInterface] = None):
        self.session = session
        self.settings = settings
        self.auth = auth if auth is not None else NoAuth()
        self.start_time = int(time.time())

        self._params = AddTorrentParams(save_path='.')
        self._params_lock = threading.Lock()

        if settings is not None:
            self._params.save_path = settings.get_str('save_path', '.')
            port = settings.get_int('listen_port', -1)
            if port != -1:
                try:
                    session.listen_on(port)
                except EngineError as e:
                    log_warning(f"[SESSION] Could not restore listen port {port}: {e}")
                else:
                    log_debug(f"[SESSION] Restored listen port {port}")

    def add_torrent_params(self) -> AddTorrentParams:
        """Copy of the add-torrent template"""
        with self._params_lock:
            return dataclasses.replace(self._params)

    def set_save_path(self, save_path: str):
        with self._params_lock:
            self._params.save_path = save_path
        if self.settings is not None:
            self.settings.set_str('save_path', save_path)
        log_debug(f"[SESSION] Download directory: {save_path}")

    def set_start_added_torrents(self, start: bool):
        with self._params_lock:
            self._params.paused = not start
            self._params.auto_managed = start
        log_debug(f"[SESSION] Start added torrents: {start}")

    def handle_json_rpc(self, doc: JsonDocument, permissions: PermissionsInterface) -> ResponseBuffer:
        """Dispatch one parsed request and return its response envelope"""
        response = ResponseBuffer()
        root = doc.root

        method_index = doc.find_key(root, 'method', TokenType.STRING)
        if method_index is None:
            response.fail('missing method in request', -1)
            return response

        method = doc.string_value(method_index)
        tag = doc.find_int(root, 'tag', -1)
        args = doc.find_key(root, 'arguments', TokenType.OBJECT)

        handler = METHODS.get(method)
        if handler is None:
            log_warning(f"[RPC] Unknown method '{method}': {doc.text(args)}")
            response.fail('method not recognized', tag)
            return response

        log_trace(f"[RPC] {method} (tag {tag}): {doc.text(args)}")
        call = RpcCall(method, doc, args, tag, permissions, response)
        try:
            handler(self, call)
        except EngineError as e:
            log_warning(f"[RPC] {method} failed: {e}")
            response.fail(str(e), tag)
        log_trace(f"[RPC] {method} (tag {tag}) -> {response.result}")
        return response

    def handle_http(self, request) -> Optional[Response]:
        """Answer RPC and upload requests; None for any other path"""
        if request.path not in RPC_PATHS and request.path != UPLOAD_PATH:
            return None

        log_debug(f"[HTTP] {request.method} {request.path}")
        try:
            return self._handle_request(request)
        except Exception as e:
            log_error(f"[HTTP] Exception during request handling: {e}")
            traceback.print_exc()
            return self._json_response({'result': str(e), 'tag': -1}, 500)

    def _handle_request(self, request) -> Response:
        permissions = parse_http_auth(request, self.auth)
        if permissions is None:
            return self._unauthorized()

        if request.path == UPLOAD_PATH:
            return self._handle_upload(request, permissions)

        content_length = request.content_length
        if not content_length or not 0 < content_length < MAX_BODY_SIZE:
            return self._error_response('request with no POST body')
        body = request.get_data()
        if not body:
            return self._error_response('request with no POST body')

        try:
            doc = JsonDocument(body)
        except JsonTokenError as e:
            log_warning(f"[HTTP] Rejected request body: {e}")
            return self._error_response(_token_error_message(e))

        response = self.handle_json_rpc(doc, permissions)
        return Response(response.to_bytes(), status=200, content_type=JSON_CONTENT_TYPE)

    def _handle_upload(self, request, permissions: PermissionsInterface) -> Response:
        if not permissions.allow_add():
            log_info("[HTTP] Upload denied")
            return self._unauthorized()

        upload = next(iter(request.files.values()), None)
        metainfo = upload.read() if upload is not None else b''
        if not metainfo:
            log_warning("[HTTP] Upload without a torrent file")
            return Response(status=400)

        params = self.add_torrent_params()
        params.metainfo = metainfo
        if request.args.get('paused') == 'true':
            params.paused = True
            params.auto_managed = False

        log_info(f"[HTTP] Uploaded torrent file ({len(metainfo)} bytes)")
        self.session.async_add_torrent(params)
        return Response(b'', status=200, content_type=JSON_CONTENT_TYPE)

    @staticmethod
    def _unauthorized() -> Response:
        return Response(status=401, headers={'WWW-Authenticate': AUTH_REALM})

    @staticmethod
    def _error_response(message: str) -> Response:
        return TransmissionWebUI._json_response({'result': message}, 401)

    @staticmethod
    def _json_response(body: dict, status: int) -> Response:
        return Response(json.dumps(body), status=status, content_type=JSON_CONTENT_TYPE)
