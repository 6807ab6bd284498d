# beaconrelay/server.py
"""
HTTP server for the relay.

Endpoints:
    PUT  /beacon                          - Register or refresh a listing
    GET  /app/:id, /world/:id|slug        - Listing with live visitor count
    GET  /apps, /worlds                   - Public directory grouped by domain
    GET  /api/apps                        - Top listings by live count
    POST /session                         - Visitor heartbeat
    GET  /events/sessions                 - Server-sent join notifications
    POST /world/:slug/request-verification
    POST /world/:slug/verify              - Sets the owner capability cookie
    POST /world/:slug/update              - Owner edit
    GET  /relay                           - System actor document
    GET  /relay/beacon/:id                - Listing as an ActivityStreams Page
    GET  /relay/activities/:n             - Ledger row
    POST /relay/inbox                     - Follow/Create/Update from peers
    GET  /relays                          - Known relays
    GET  /.well-known/webfinger
    POST /login                           - Admin password -> admin cookie
    GET  /admin, POST /admin/follow, POST /admin/togglevisible
    GET  /health
"""

import json
import logging
import secrets
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from .activitypub.activity import FOLLOW, ActivityLedger
from .activitypub.actor import SYSTEM_RELAY_ID, SYSTEM_RELAY_NAME, Relay
from .activitypub.delivery import Delivery, DeliveryMode, HttpDelivery
from .activitypub.fanout import FederationFanout
from .activitypub.inbox import InboxHandlers
from .activitypub.resolve import ActorResolver, parse_handle, webfinger_document
from .capability import ADMIN_COOKIE, ADMIN_TTL, CapabilityIssuer, cookie_header
from .client import ACTIVITY_JSON
from .config import Config
from .errors import AuthError, NotFound, RelayError, ValidationError
from .ownership import OwnershipVerifier, PageFetcher
from .presence import PresenceTracker, SessionEvent
from .registry.images import ImageMaterializer
from .registry.listing import Listing
from .registry.synchronizer import Outcome, RegistrySynchronizer, Submission, UpsertResult
from .store import Database
from .urls import base_url, host_of

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0", "[::1]", "::1")
TOP_APPS = 10

UPSERT_STATUS = {
    Outcome.CREATED: 201,
    Outcome.UPDATED: 200,
    Outcome.UNCHANGED: 304,
}


class RelayServer:
    """
    Wires the relay's components together and serves them over HTTP.

    Usage:
        server = RelayServer(Config.load("relay.yaml"))
        server.start()  # Blocking

    Collaborators that reach the network can be injected (tests pass fakes).
    """

    def __init__(
        self,
        config: Config,
        db: Optional[Database] = None,
        delivery: Optional[Delivery] = None,
        resolver: Optional[ActorResolver] = None,
        page_fetcher: Optional[PageFetcher] = None,
        presence: Optional[PresenceTracker] = None,
    ):
        self.config = config
        self.db = db or Database(config.data_dir)
        self.system_relay = self._bootstrap_system_relay()

        self.ledger = ActivityLedger(self.db, config.system_identity)
        self.delivery = delivery or HttpDelivery()
        self.fanout = FederationFanout(
            self.db, self.ledger, self.delivery, DeliveryMode(config.delivery_mode)
        )
        self.images = ImageMaterializer(config.images_dir, config.base_url)
        self.registry = RegistrySynchronizer(
            self.db, self.ledger, self.fanout, self.images, config.system_identity
        )
        self.presence = presence or PresenceTracker(name_resolver=self._listing_name)
        self.issuer = CapabilityIssuer(self.system_relay.private_key, self.system_relay.public_key)
        self.ownership = OwnershipVerifier(self.db, self.issuer, page_fetcher)
        self.resolver = resolver or ActorResolver(protocol=config.protocol)
        self.inbox = InboxHandlers(self.db, self.ledger, self.resolver)

        self._httpd: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def _bootstrap_system_relay(self) -> Relay:
        """Create relay 0 with a fresh key pair on first start."""
        relay = self.db.get_relay(SYSTEM_RELAY_ID)
        if relay is None:
            relay = self.db.insert_relay(Relay.create_system(self.config.system_identity))
            logger.info(f"Created system relay {relay.identity}")
        elif relay.identity != self.config.system_identity:
            logger.warning(
                f"System relay identity {relay.identity} does not match "
                f"configured {self.config.system_identity}"
            )
        return relay

    def _listing_name(self, url: str) -> Optional[str]:
        listing = self.db.get_listing_by_base_url(base_url(url))
        return listing.name if listing else None

    # -- directory ----------------------------------------------------------

    def find_listing(self, key: str) -> Listing:
        """Look a listing up by numeric id or slug."""
        listing = self.db.get_listing(int(key)) if key.isdigit() else None
        if listing is None:
            listing = self.db.get_listing_by_slug(key)
        if listing is None:
            raise NotFound(f"No listing {key!r}")
        return listing

    def is_listed(self, listing: Listing) -> bool:
        """Whether a listing appears in public directory views."""
        if not listing.visible:
            return False
        if not self.config.debug and host_of(listing.url) in LOCAL_HOSTS:
            return False
        if not self.config.show_adult_content and listing.adult:
            return False
        return True

    def listing_view(self, listing: Listing, counts: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        data = listing.to_public()
        if counts is None:
            data["live_count"] = self.presence.live_count(listing.url)
        else:
            data["live_count"] = counts.get(listing.base_url, 0)
        return data

    def directory(self) -> Dict[str, Any]:
        counts = self.presence.counts_by_base_url()
        listed = [l for l in self.db.list_listings() if self.is_listed(l)]
        groups: Dict[str, List[Dict[str, Any]]] = {}
        for listing in listed:
            groups.setdefault(host_of(listing.url), []).append(self.listing_view(listing, counts))
        return {
            "domains": [{"domain": domain, "listings": groups[domain]} for domain in sorted(groups)],
            "total_apps": len(listed),
        }

    def top_apps(self, limit: int = TOP_APPS) -> Dict[str, Any]:
        counts = self.presence.counts_by_base_url()
        listed = [l for l in self.db.list_listings() if self.is_listed(l)]
        ranked = sorted(listed, key=lambda l: (-counts.get(l.base_url, 0), l.id))[:limit]
        return {
            "apps": [self.listing_view(l, counts) for l in ranked],
            "total_apps": len(listed),
            "total_online": sum(counts.values()),
        }

    # -- submissions and presence -----------------------------------------

    def submit(self, payload: Any, origin: Optional[str]) -> UpsertResult:
        return self.registry.upsert(Submission.from_payload(payload), origin)

    def heartbeat(self, payload: Any):
        if not isinstance(payload, dict):
            raise ValidationError("Body must be a JSON object")
        session_id = payload.get("session_id")
        url = payload.get("url")
        timestamp = payload.get("timestamp_ms", payload.get("timestamp"))
        if not isinstance(session_id, str) or not session_id:
            raise ValidationError("'session_id' must be a non-empty string")
        if not isinstance(url, str) or not url:
            raise ValidationError("'url' must be a non-empty string")
        if timestamp is None:
            timestamp = self.presence.clock()
        elif isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise ValidationError("'timestamp_ms' must be an integer")
        return self.presence.heartbeat(session_id, url, timestamp)

    # -- ownership ----------------------------------------------------------

    def owner_update(self, key: str, cookie: Optional[str], changes: Any) -> UpsertResult:
        listing = self.find_listing(key)
        self.ownership.authorize(cookie, listing.id)
        if not isinstance(changes, dict):
            raise ValidationError("Body must be a JSON object")
        return self.registry.edit(listing.id, changes)

    # -- admin --------------------------------------------------------------

    def login(self, password: Any) -> str:
        """Exchange the admin password for an admin capability token."""
        expected = self.config.admin_password
        if not expected:
            raise AuthError("Admin login is disabled")
        if not isinstance(password, str) or not secrets.compare_digest(
            password.encode(), expected.encode()
        ):
            raise AuthError("Incorrect password")
        logger.info("Admin logged in")
        return self.issuer.issue_admin()

    def follow(self, handle: str) -> Relay:
        """Send a Follow from the system actor to a remote relay."""
        remote = self.resolver.resolve(handle)
        with self.db.transaction():
            relay = self.db.get_relay_by_identity(remote.identity)
            if relay is None:
                relay = self.db.insert_relay(remote)
        self.fanout.publish(FOLLOW, relay.identity, recipients=[relay.inbox])
        logger.info(f"Followed {relay.identity}")
        return relay

    def admin_overview(self) -> Dict[str, Any]:
        return {
            "listings": [l.to_public() for l in self.db.list_listings()],
            "relays": [r.to_public() for r in self.db.list_relays()],
            "followers": [r.identity for r in self.db.followers_of(SYSTEM_RELAY_ID)],
            "activities": len(self.ledger),
        }

    # -- federation ---------------------------------------------------------

    def webfinger(self, resource: Optional[str]) -> Dict[str, Any]:
        if not resource:
            raise ValidationError("Missing 'resource' parameter")
        name, domain = parse_handle(resource)
        if name != SYSTEM_RELAY_NAME or domain.lower() != self.config.domain.lower():
            raise NotFound(f"No actor {resource}")
        return webfinger_document(resource, self.system_relay.identity)

    # -- HTTP ---------------------------------------------------------------

    def _create_handler(server_instance):
        """Create request handler with access to server instance."""

        class RequestHandler(BaseHTTPRequestHandler):
            server_ref = server_instance

            def log_message(self, format, *args):
                logger.debug(format % args)

            def _cors(self):
                self.send_header("Access-Control-Allow-Origin", "*")
                self.send_header("Access-Control-Allow-Methods", "GET, POST, PUT, OPTIONS")
                self.send_header("Access-Control-Allow-Headers", "Content-Type")

            def _send_json(
                self,
                data: Any,
                status: int = 200,
                content_type: str = "application/json",
                headers: Optional[Dict[str, str]] = None,
            ):
                body = json.dumps(data).encode()
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(body)))
                for name, value in (headers or {}).items():
                    self.send_header(name, value)
                self._cors()
                self.end_headers()
                self.wfile.write(body)

            def _send_empty(self, status: int):
                self.send_response(status)
                self._cors()
                self.end_headers()

            def _send_error(self, message: str, status: int = 400, **detail):
                self._send_json({"error": message, **detail}, status)

            def _read_body(self) -> bytes:
                content_length = int(self.headers.get("Content-Length", 0))
                return self.rfile.read(content_length)

            def _read_json(self) -> Any:
                try:
                    return json.loads(self._read_body().decode())
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    raise ValidationError(f"Invalid JSON: {e}") from e

            def _read_fields(self) -> Dict[str, Any]:
                """Form or JSON body as a flat dict."""
                content_type = self.headers.get("Content-Type", "")
                if content_type.startswith("application/x-www-form-urlencoded"):
                    form = parse_qs(self._read_body().decode())
                    return {key: values[0] for key, values in form.items()}
                data = self._read_json()
                if not isinstance(data, dict):
                    raise ValidationError("Body must be an object")
                return data

            def _require_admin(self):
                self.server_ref.issuer.require_admin(self.headers.get("Cookie"))

            def _dispatch(self, route):
                path = urlparse(self.path)
                try:
                    route(path.path.rstrip("/") or "/", parse_qs(path.query))
                except RelayError as e:
                    if e.status_code >= 500:
                        logger.error(f"{self.command} {self.path} failed: {e}")
                    self._send_error(str(e), e.status_code, **e.detail())
                except Exception:
                    logger.exception(f"Unhandled error in {self.command} {self.path}")
                    self._send_error("Internal server error", 500)

            def do_OPTIONS(self):
                self._send_empty(204)

            def do_GET(self):
                self._dispatch(self._get)

            def do_PUT(self):
                self._dispatch(self._put)

            def do_POST(self):
                self._dispatch(self._post)

            def _get(self, path: str, query: Dict[str, List[str]]):
                server = self.server_ref
                parts = path.strip("/").split("/")

                if path == "/health":
                    self._send_json({"status": "ok"})

                elif path == "/":
                    self._send_json({
                        "relay": server.system_relay.identity,
                        "total_apps": server.db.listing_count(),
                        "total_online": server.presence.total_online(),
                    })

                elif path in ("/apps", "/worlds"):
                    self._send_json(server.directory())

                elif path == "/api/apps":
                    self._send_json(server.top_apps())

                elif len(parts) == 2 and parts[0] in ("app", "world"):
                    listing = server.find_listing(parts[1])
                    self._send_json(server.listing_view(listing))

                elif path == "/events/sessions":
                    self._stream_sessions()

                elif path == "/relay":
                    self._send_json(server.system_relay.to_activitypub(), content_type=ACTIVITY_JSON)

                elif len(parts) == 3 and parts[:2] == ["relay", "beacon"] and parts[2].isdigit():
                    listing = server.db.require_listing(int(parts[2]))
                    self._send_json(listing.to_activitypub(), content_type=ACTIVITY_JSON)

                elif len(parts) == 3 and parts[:2] == ["relay", "activities"] and parts[2].isdigit():
                    activity = server.ledger.get(int(parts[2]))
                    if activity is None:
                        raise NotFound(f"No activity {parts[2]}")
                    self._send_json(activity.to_activitypub(), content_type=ACTIVITY_JSON)

                elif path == "/relays":
                    self._send_json([r.to_public() for r in server.db.list_relays()])

                elif path == "/.well-known/webfinger":
                    resource = query.get("resource", [None])[0]
                    self._send_json(server.webfinger(resource), content_type="application/jrd+json")

                elif path == "/admin":
                    self._require_admin()
                    self._send_json(server.admin_overview())

                else:
                    self._send_error("Not found", 404)

            def _put(self, path: str, query: Dict[str, List[str]]):
                if path != "/beacon":
                    self._send_error("Not found", 404)
                    return

                result = self.server_ref.submit(self._read_json(), self.headers.get("Origin"))
                status = UPSERT_STATUS[result.outcome]
                if status == 304:
                    self._send_empty(304)
                    return
                self._send_json(result.listing.to_public(), status)

            def _post(self, path: str, query: Dict[str, List[str]]):
                server = self.server_ref
                parts = path.strip("/").split("/")

                if path == "/session":
                    result = server.heartbeat(self._read_json())
                    self._send_json({"new_session": result.is_new_session})

                elif path == "/relay/inbox":
                    activity = server.inbox.receive(self._read_json())
                    self._send_json({"status": "accepted", "id": activity.id}, 202)

                elif path == "/login":
                    token = server.login(self._read_fields().get("password"))
                    cookie = cookie_header(ADMIN_COOKIE, token, ADMIN_TTL)
                    self._send_json({"status": "ok"}, headers={"Set-Cookie": cookie})

                elif path == "/admin/follow":
                    self._require_admin()
                    fields = self._read_fields()
                    handle = fields.get("handle") or fields.get("follow_url")
                    if not isinstance(handle, str) or not handle:
                        raise ValidationError("'handle' is required")
                    relay = server.follow(handle)
                    self._send_json({"status": "following", "relay": relay.identity})

                elif path == "/admin/togglevisible":
                    self._require_admin()
                    app_id = self._read_fields().get("app_id")
                    try:
                        listing_id = int(app_id)
                    except (TypeError, ValueError) as e:
                        raise ValidationError("'app_id' must be an integer") from e
                    listing = server.registry.toggle_visibility(listing_id)
                    self._send_json(listing.to_public())

                elif len(parts) == 3 and parts[0] == "world":
                    self._world_action(parts[1], parts[2])

                else:
                    self._send_error("Not found", 404)

            def _world_action(self, key: str, action: str):
                server = self.server_ref

                if action == "request-verification":
                    listing = server.find_listing(key)
                    challenge = server.ownership.request_verification(listing.id)
                    self._send_json(challenge.to_dict())

                elif action == "verify":
                    listing = server.find_listing(key)
                    grant = server.ownership.verify(listing.id)
                    self._send_json(
                        {"verified": True, "listing_id": grant.listing_id, "slug": grant.slug},
                        headers={"Set-Cookie": grant.cookie},
                    )

                elif action == "update":
                    result = server.owner_update(key, self.headers.get("Cookie"), self._read_json())
                    self._send_json({
                        "outcome": result.outcome.value,
                        "listing": result.listing.to_public(),
                    })

                else:
                    self._send_error("Not found", 404)

            def _stream_sessions(self):
                """Hold the connection open and write one event per join."""
                subscription = self.server_ref.presence.subscribe()
                self.send_response(200)
                self.send_header("Content-Type", "text/event-stream")
                self.send_header("Cache-Control", "no-cache")
                self._cors()
                self.end_headers()
                try:
                    for item in subscription:
                        if isinstance(item, SessionEvent):
                            chunk = f"data: {json.dumps(item.to_dict())}\n\n"
                        else:
                            chunk = ": heartbeat\n\n"
                        self.wfile.write(chunk.encode())
                        self.wfile.flush()
                except (BrokenPipeError, ConnectionResetError):
                    logger.debug("Session stream client disconnected")
                finally:
                    subscription.close()

        return RequestHandler

    def _bind(self) -> ThreadingHTTPServer:
        if self._httpd is None:
            self._httpd = ThreadingHTTPServer(
                (self.config.host, self.config.port), self._create_handler()
            )
            self._httpd.daemon_threads = True
        return self._httpd

    @property
    def address(self) -> tuple:
        """(host, port) actually bound; useful when port 0 was requested."""
        return self._bind().server_address[:2]

    def start(self):
        """Start the HTTP server (blocking)."""
        httpd = self._bind()
        host, port = self.address
        logger.info(f"Relay {self.config.system_identity} listening on {host}:{port}")
        print(f"Relay running on http://{host}:{port}")
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            print("\nShutting down...")
        finally:
            self._release()

    def start_background(self) -> threading.Thread:
        """Start the server in a background thread."""
        httpd = self._bind()
        self._thread = threading.Thread(target=httpd.serve_forever, name="relay-http")
        self._thread.daemon = True
        self._thread.start()
        return self._thread

    def shutdown(self):
        """Stop a background server and release its resources."""
        self.presence.close()
        if self._httpd is not None and self._thread is not None:
            self._httpd.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self._release()

    def _release(self):
        self.presence.close()
        self.delivery.close()
        if self._httpd is not None:
            self._httpd.server_close()
            self._httpd = None

