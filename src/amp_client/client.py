"""
AMPClient / AsyncAMPClient: main client entry points.
"""

import asyncio
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union

import httpx

from amp_client.address import DEFAULT_TENANT, AddressResolver
from amp_client.attachments import AttachmentEngine, DownloadReport
from amp_client.config import Settings, lookup_organization, resolve_identity_dir
from amp_client.delivery import DeliveryOrchestrator, DeliveryResult, FetchResult, ProviderFactory
from amp_client.identity import Identity
from amp_client.models.envelope import Message
from amp_client.models.registration import Registration
from amp_client.registrations import RegistrationStore
from amp_client.store import MessageStore

PathLike = Union[str, Path]


class AsyncAMPClient:
    """Async AMP client (primary). One instance per agent identity."""

    def __init__(
        self,
        identity: Identity,
        settings: Optional[Settings] = None,
        organization: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.identity = identity
        self.settings = settings or Settings()
        # An explicit non-default tenant always wins over the mesh organization.
        tenant = identity.tenant if (identity.tenant != DEFAULT_TENANT or not organization) else None
        self.resolver = AddressResolver(
            tenant=tenant,
            local_domain=self.settings.local_domain,
            legacy_aliases=self.settings.legacy_local_aliases,
            organization=organization,
        )
        self.store = MessageStore(identity.messages_dir)
        self.registrations = RegistrationStore(identity.registrations_dir)
        self.attachments = AttachmentEngine(identity.attachments_dir, self.settings, transport=transport)
        self.delivery = DeliveryOrchestrator(
            identity,
            self.settings,
            resolver=self.resolver,
            store=self.store,
            registrations=self.registrations,
            attachments=self.attachments,
            provider_factory=ProviderFactory(self.settings, transport),
        )

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "AsyncAMPClient":
        """Load settings and the identity selected by ``AMP_DIR`` / ``AMP_AGENT_NAME``."""
        settings = Settings.from_env(env)
        identity = Identity.load(resolve_identity_dir(settings, env))
        organization = None
        if identity.tenant == DEFAULT_TENANT:
            organization = lookup_organization(settings.mesh_url)
        return cls(identity, settings, organization=organization, transport=transport)

    @classmethod
    def init(
        cls,
        root: PathLike,
        name: str,
        tenant: str = DEFAULT_TENANT,
        settings: Optional[Settings] = None,
        force: bool = False,
        **kwargs: Any,
    ) -> "AsyncAMPClient":
        """Create a new identity at ``root`` and return a client for it."""
        settings = settings or Settings()
        identity = Identity.create(
            root, name, tenant,
            provider_domain=settings.local_domain,
            mesh_url=settings.mesh_url,
            force=force,
        )
        return cls(identity, settings, **kwargs)

    @property
    def address(self) -> str:
        return self.identity.address

    # Messaging

    async def send(self, to: str, subject: str, body: str, **kwargs: Any) -> DeliveryResult:
        """Send a message. Keyword options: type, priority, in_reply_to, context, attachments, thread_id."""
        return await self.delivery.send(to, subject, body, **kwargs)

    async def reply(self, message_id: str, body: str, **kwargs: Any) -> DeliveryResult:
        return await self.delivery.reply(message_id, body, **kwargs)

    async def fetch(self, provider: Optional[str] = None, ack: bool = True) -> FetchResult:
        return await self.delivery.fetch(provider, ack=ack)

    async def register(self, provider: str, tenant: Optional[str] = None, **kwargs: Any) -> Registration:
        return await self.delivery.register(provider, tenant, **kwargs)

    # Local mailbox

    def inbox(self, status: Optional[str] = "unread") -> list[Message]:
        """Inbox messages, newest first. ``status`` is ``unread``, ``read`` or None/``all``."""
        return self.store.list("inbox", status)

    def sent(self) -> list[Message]:
        return self.store.list("sent")

    def read(self, message_id: str, mark_read: bool = True, box: str = "inbox") -> Message:
        message = self.store.get(message_id, box)
        if mark_read and box == "inbox" and self.store.mark_read(message_id):
            message = self.store.get(message_id, box)
        return message

    def mark_read(self, message_id: str) -> bool:
        return self.store.mark_read(message_id)

    def delete(self, message_id: str, box: str = "inbox") -> bool:
        return self.store.delete(message_id, box)

    # Attachments

    def _default_downloads(self) -> Path:
        return self.identity.root / "downloads"

    async def download(
        self,
        message_id: str,
        dest_dir: Optional[PathLike] = None,
        *,
        allow_suspicious: bool = False,
        box: str = "inbox",
    ) -> list[DownloadReport]:
        """Download every attachment of a message; blocked/failed ones are reported."""
        return await self.delivery.download_all(
            message_id, dest_dir or self._default_downloads(), allow_suspicious=allow_suspicious, box=box,
        )

    async def download_attachment(
        self,
        message_id: str,
        attachment_id: str,
        dest_dir: Optional[PathLike] = None,
        *,
        allow_suspicious: bool = False,
        box: str = "inbox",
    ) -> Path:
        return await self.delivery.download_attachment(
            message_id, attachment_id, dest_dir or self._default_downloads(),
            allow_suspicious=allow_suspicious, box=box,
        )


class AMPClient:
    """Sync wrapper around AsyncAMPClient. Runs the event loop internally."""

    def __init__(self, identity: Optional[Identity] = None, *, client: Optional[AsyncAMPClient] = None,
                 **kwargs: Any):
        if client is None:
            if identity is None:
                raise TypeError("AMPClient needs an identity or an AsyncAMPClient")
            client = AsyncAMPClient(identity, **kwargs)
        self._async = client
        self._loop = asyncio.new_event_loop()

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **kwargs: Any) -> "AMPClient":
        return cls(client=AsyncAMPClient.from_env(env, **kwargs))

    def _run(self, coro: Any) -> Any:
        return self._loop.run_until_complete(coro)

    def close(self) -> None:
        self._loop.close()

    def __enter__(self) -> "AMPClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def identity(self) -> Identity:
        return self._async.identity

    @property
    def address(self) -> str:
        return self._async.address

    def send(self, to: str, subject: str, body: str, *, attachments: Sequence[PathLike] = (),
             **kwargs: Any) -> DeliveryResult:
        return self._run(self._async.send(to, subject, body, attachments=attachments, **kwargs))

    def reply(self, message_id: str, body: str, **kwargs: Any) -> DeliveryResult:
        return self._run(self._async.reply(message_id, body, **kwargs))

    def fetch(self, provider: Optional[str] = None, ack: bool = True) -> FetchResult:
        return self._run(self._async.fetch(provider, ack=ack))

    def register(self, provider: str, tenant: Optional[str] = None, **kwargs: Any) -> Registration:
        return self._run(self._async.register(provider, tenant, **kwargs))

    def inbox(self, status: Optional[str] = "unread") -> list[Message]:
        return self._async.inbox(status)

    def sent(self) -> list[Message]:
        return self._async.sent()

    def read(self, message_id: str, mark_read: bool = True, box: str = "inbox") -> Message:
        return self._async.read(message_id, mark_read, box)

    def mark_read(self, message_id: str) -> bool:
        return self._async.mark_read(message_id)

    def delete(self, message_id: str, box: str = "inbox") -> bool:
        return self._async.delete(message_id, box)

    def download(self, message_id: str, dest_dir: Optional[PathLike] = None, **kwargs: Any) -> list[DownloadReport]:
        return self._run(self._async.download(message_id, dest_dir, **kwargs))

    def download_attachment(self, message_id: str, attachment_id: str, dest_dir: Optional[PathLike] = None,
                            **kwargs: Any) -> Path:
        return self._run(self._async.download_attachment(message_id, attachment_id, dest_dir, **kwargs))
