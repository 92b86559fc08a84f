"""
Minimal threaded IMAP4rev1 server for tests.

Supports the commands the archiver issues: CAPABILITY, LOGIN,
AUTHENTICATE XOAUTH2, LIST, SELECT/EXAMINE, UID SEARCH, UID FETCH, FETCH
(sequence ranges), NOOP and LOGOUT.

Test hooks on the server object:
    password          If set, LOGIN with any other password fails.
    oauth2_token      If set, AUTHENTICATE XOAUTH2 must present this bearer token.
    uid_overrides     {uid: reported_uid}: FETCH responses for `uid` report another UID.
    fail_commands     {"UID FETCH": "NO ..."}: answer a command with this status.
    busy_counts       {"SELECT": 2}: answer NO [UNAVAILABLE] this many times first.
    noselect          Set of extra \\Noselect container names to LIST.
    commands          Every command received, as "VERB args" strings.
"""

import base64
import re
import socketserver
import threading

RESPONSE_SELECT_FIRST = "NO Select first"
FETCH_ITEMS_PATTERN = re.compile(r"BODY(\.PEEK)?\[\]|RFC822(?![.\w])", re.I)


def _quote(name):
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _tokens(args):
    """Splits command arguments into atoms and unescaped quoted strings."""
    out = []
    for match in re.finditer(r'"((?:[^"\\]|\\.)*)"|(\S+)', args):
        if match.group(1) is not None:
            out.append(re.sub(r"\\(.)", r"\1", match.group(1)))
        else:
            out.append(match.group(2))
    return out


def _parse_set(spec, max_value):
    """Parses an IMAP sequence set ("1", "1:3", "2,5", "4:*") into a set of ints."""
    values = set()
    for part in spec.split(","):
        if ":" in part:
            lo, hi = part.split(":", 1)
            lo = max_value if lo == "*" else int(lo)
            hi = max_value if hi == "*" else int(hi)
            lo, hi = min(lo, hi), max(lo, hi)
            values.update(range(lo, hi + 1))
        else:
            values.add(max_value if part == "*" else int(part))
    return values


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """Handles one client connection."""

    def handle(self):
        self.wfile.write(b"* OK [CAPABILITY IMAP4rev1] Mock IMAP Server Ready\r\n")
        self.selected_folder = None

        while True:
            try:
                line = self.rfile.readline()
            except OSError:
                break
            if not line:
                break
            line = line.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue

            parts = line.split(" ", 2)
            tag = parts[0]
            cmd = parts[1].upper() if len(parts) > 1 else ""
            args = parts[2] if len(parts) > 2 else ""
            if cmd == "UID":
                sub = args.split(" ", 1)
                cmd = f"UID {sub[0].upper()}"
                args = sub[1] if len(sub) > 1 else ""

            self.server.record(f"{cmd} {args}".strip())
            injected = self.server.injected_response(cmd)
            if injected:
                self.send_response(tag, injected)
                continue

            try:
                if not self.dispatch(tag, cmd, args):
                    break
            except Exception as e:
                self.send_response(tag, f"BAD {e}")

    def dispatch(self, tag, cmd, args):
        if cmd == "CAPABILITY":
            self.wfile.write(b"* CAPABILITY IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2\r\n")
            self.send_response(tag, "OK CAPABILITY completed")
        elif cmd == "LOGIN":
            tokens = _tokens(args)
            password = tokens[1] if len(tokens) > 1 else ""
            if self.server.password is not None and password != self.server.password:
                self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
            else:
                self.send_response(tag, "OK LOGIN completed")
        elif cmd == "AUTHENTICATE":
            self.authenticate(tag, args)
        elif cmd == "LOGOUT":
            self.wfile.write(b"* BYE Logging out\r\n")
            self.send_response(tag, "OK LOGOUT completed")
            return False
        elif cmd == "NOOP":
            self.send_response(tag, "OK NOOP")
        elif cmd == "LIST":
            for name in sorted(self.server.noselect):
                self.wfile.write(f"* LIST (\\Noselect \\HasChildren) \"/\" {_quote(name)}\r\n".encode())
            for name in self.server.folders:
                self.wfile.write(f"* LIST (\\HasNoChildren) \"/\" {_quote(name)}\r\n".encode())
            self.send_response(tag, "OK LIST completed")
        elif cmd in ("SELECT", "EXAMINE"):
            self.select(tag, cmd, args)
        elif cmd == "UID SEARCH":
            if not self.selected_folder:
                self.send_response(tag, RESPONSE_SELECT_FIRST)
            else:
                uids = " ".join(str(m["uid"]) for m in self.messages())
                self.wfile.write(f"* SEARCH {uids}\r\n".encode() if uids else b"* SEARCH\r\n")
                self.send_response(tag, "OK SEARCH completed")
        elif cmd == "UID FETCH":
            self.fetch(tag, args, by_uid=True)
        elif cmd == "FETCH":
            self.fetch(tag, args, by_uid=False)
        else:
            self.send_response(tag, "BAD Command not recognized")
        return True

    def authenticate(self, tag, args):
        if args.strip().upper() != "XOAUTH2":
            self.send_response(tag, "NO Unsupported mechanism")
            return
        self.wfile.write(b"+ \r\n")
        self.wfile.flush()
        response = self.rfile.readline().strip()
        try:
            decoded = base64.b64decode(response).decode("utf-8")
        except Exception:
            self.send_response(tag, "BAD Invalid base64")
            return
        match = re.search(r"auth=Bearer ([^\x01]+)", decoded)
        token = match.group(1) if match else None
        if self.server.oauth2_token is not None and token != self.server.oauth2_token:
            self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid token")
        else:
            self.send_response(tag, "OK AUTHENTICATE completed")

    def messages(self):
        return self.server.folders[self.selected_folder]

    def select(self, tag, cmd, args):
        tokens = _tokens(args)
        folder = tokens[0] if tokens else ""
        if folder not in self.server.folders:
            self.selected_folder = None
            self.send_response(tag, "NO [NONEXISTENT] Folder not found")
            return
        self.selected_folder = folder
        msgs = self.messages()
        next_uid = max((m["uid"] for m in msgs), default=0) + 1
        self.wfile.write(f"* {len(msgs)} EXISTS\r\n".encode())
        self.wfile.write(b"* 0 RECENT\r\n")
        self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
        self.wfile.write(b"* OK [UIDVALIDITY 1] UIDs valid\r\n")
        self.wfile.write(f"* OK [UIDNEXT {next_uid}] Predicted next UID\r\n".encode())
        mode = "READ-ONLY" if cmd == "EXAMINE" else "READ-WRITE"
        self.send_response(tag, f"OK [{mode}] {cmd} completed")

    def fetch(self, tag, args, by_uid):
        if not self.selected_folder:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return
        msg_set, _, opts = args.partition(" ")
        msgs = self.messages()

        if by_uid:
            max_uid = max((m["uid"] for m in msgs), default=0)
            wanted = _parse_set(msg_set, max_uid)
            targets = [(i, m) for i, m in enumerate(msgs, start=1) if m["uid"] in wanted]
        else:
            wanted = _parse_set(msg_set, len(msgs))
            targets = [(i, m) for i, m in enumerate(msgs, start=1) if i in wanted]

        want_body = bool(FETCH_ITEMS_PATTERN.search(opts))
        for seq, m in targets:
            content = m["content"]
            reported_uid = self.server.uid_overrides.get(m["uid"], m["uid"])
            head = f"* {seq} FETCH (UID {reported_uid} RFC822.SIZE {len(content)}"
            if want_body:
                self.wfile.write(f"{head} BODY[] {{{len(content)}}}\r\n".encode())
                self.wfile.write(content)
                self.wfile.write(b")\r\n")
            else:
                self.wfile.write(f"{head})\r\n".encode())
        self.wfile.flush()
        self.send_response(tag, "OK FETCH completed")

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())
        self.wfile.flush()


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, initial_folders=None):
        super().__init__(server_address, request_handler_class)
        self.lock = threading.Lock()
        self.folders = {}
        for fname, contents in (initial_folders or {"INBOX": []}).items():
            self.folders[fname] = []
            for i, c in enumerate(contents):
                if isinstance(c, bytes):
                    self.folders[fname].append({"uid": i + 1, "flags": set(), "content": c})
                else:
                    self.folders[fname].append(c)
        self.password = None
        self.oauth2_token = None
        self.uid_overrides = {}
        self.fail_commands = {}
        self.busy_counts = {}
        self.noselect = set()
        self.commands = []
        self.thread = None

    def record(self, command):
        with self.lock:
            self.commands.append(command)

    def injected_response(self, cmd):
        with self.lock:
            if self.busy_counts.get(cmd, 0) > 0:
                self.busy_counts[cmd] -= 1
                return "NO [UNAVAILABLE] Server Busy, try again later"
            return self.fail_commands.get(cmd)

    def add_message(self, folder, content, uid=None):
        msgs = self.folders.setdefault(folder, [])
        if uid is None:
            uid = max((m["uid"] for m in msgs), default=0) + 1
        msgs.append({"uid": uid, "flags": set(), "content": content})
        return uid

    def stop(self):
        self.shutdown()
        self.server_close()
        if self.thread is not None:
            self.thread.join(timeout=2)


def start_server_thread(port=0, initial_folders=None):
    """Starts a mock server on localhost; returns (server, actual_port)."""
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders)
    t = threading.Thread(target=server.serve_forever)
    t.daemon = True
    t.start()
    server.thread = t
    return server, server.server_address[1]
