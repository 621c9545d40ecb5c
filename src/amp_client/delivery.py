"""
Delivery orchestration: send, reply, fetch, register.

Route selection for a send:

1. External provider: an existing registration is required. ``from`` is
   re-stamped with the provider address and the message is re-signed.
2. Local mesh: route through the mesh registration, auto-registering once
   when there is none.
3. Mesh unreachable or registration refused: write straight into a
   co-located recipient's inbox.
4. Anything else is a reported error; nothing is dropped silently.
"""

import logging
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence, Union

import httpx
from pydantic import BaseModel

from amp_client.address import Address, AddressResolver
from amp_client.attachments import AttachmentEngine, DownloadReport, ValidatedFile
from amp_client.config import Settings, provider_api_url
from amp_client.envelope import create_envelope, parse_message, reply_subject
from amp_client.errors import (
    ConfigError,
    CryptoError,
    InvalidInputError,
    NotRegisteredError,
    ProviderError,
    ProviderUnreachableError,
    RecipientNotFoundError,
)
from amp_client.identity import Identity, load_identity_config, validate_agent_name
from amp_client.models.envelope import LocalInfo, Message, MessageType, Priority
from amp_client.models.registration import Registration
from amp_client.providers import ExternalProvider, HttpProvider, MeshProvider, ProviderKind
from amp_client.registrations import RegistrationStore
from amp_client.security import SignatureStatus, apply_security
from amp_client.signing import load_public_key, sign_message, verify_message
from amp_client.store import MessageStore, validate_message_id

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class DeliveryMethod(str, Enum):
    MESH = "mesh"
    EXTERNAL = "external"
    FILESYSTEM = "filesystem"


class DeliveryResult(BaseModel):
    message_id: str
    recipient: str
    method: DeliveryMethod
    provider: str
    status: str
    path: Optional[str] = None


class FetchResult(BaseModel):
    fetched: list[str] = []
    skipped: list[str] = []
    errors: dict[str, str] = {}


class ProviderFactory:
    """Builds provider clients; tests pass an ``httpx.MockTransport``."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    def create(
        self,
        kind: ProviderKind,
        domain: str,
        api_url: str,
        registration: Optional[Registration] = None,
    ) -> HttpProvider:
        cls = MeshProvider if kind == ProviderKind.MESH else ExternalProvider
        kwargs: dict[str, Any] = {
            "connect_timeout": self.settings.connect_timeout,
            "request_timeout": self.settings.request_timeout,
            "transport": self.transport,
        }
        if registration is not None:
            return cls.from_registration(registration, **kwargs)
        return cls(domain, api_url, **kwargs)


class DeliveryOrchestrator:
    def __init__(
        self,
        identity: Identity,
        settings: Optional[Settings] = None,
        resolver: Optional[AddressResolver] = None,
        store: Optional[MessageStore] = None,
        registrations: Optional[RegistrationStore] = None,
        attachments: Optional[AttachmentEngine] = None,
        provider_factory: Optional[ProviderFactory] = None,
    ):
        self.identity = identity
        self.settings = settings or Settings()
        self.resolver = resolver or AddressResolver(
            tenant=identity.tenant,
            local_domain=self.settings.local_domain,
            legacy_aliases=self.settings.legacy_local_aliases,
        )
        self.store = store or MessageStore(identity.messages_dir)
        self.registrations = registrations or RegistrationStore(identity.registrations_dir)
        self.provider_factory = provider_factory or ProviderFactory(self.settings)
        self.attachments = attachments or AttachmentEngine(
            identity.attachments_dir, self.settings, transport=self.provider_factory.transport,
        )

    def _kind(self, provider: str) -> ProviderKind:
        return ProviderKind.MESH if self.resolver.is_local_provider(provider) else ProviderKind.EXTERNAL

    def _provider(self, registration: Registration) -> HttpProvider:
        return self.provider_factory.create(
            self._kind(registration.provider), registration.provider, registration.api_url, registration,
        )

    # Send

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        *,
        type: str = MessageType.NOTIFICATION.value,
        priority: str = Priority.NORMAL.value,
        in_reply_to: Optional[str] = None,
        context: Optional[Any] = None,
        attachments: Sequence[PathLike] = (),
        thread_id: Optional[str] = None,
    ) -> DeliveryResult:
        files = self.attachments.validate(attachments)
        message = create_envelope(
            self.identity.address, self.resolver, to, subject, body,
            type=type, priority=priority, in_reply_to=in_reply_to, context=context, thread_id=thread_id,
        )
        recipient = self.resolver.resolve(to)
        if recipient.is_local:
            return await self._send_local(message, recipient, files)
        return await self._send_external(message, recipient, files)

    async def _send_external(self, message: Message, recipient: Address, files: list[ValidatedFile]) -> DeliveryResult:
        registration = self.registrations.get(recipient.provider)
        if registration is None:
            raise NotRegisteredError(recipient.provider)

        async with self._provider(registration) as provider:
            message.payload.attachments = [await self.attachments.upload(f, provider) for f in files]
            # The signature covers `from`, so it is recomputed after re-stamping.
            message.envelope.from_ = registration.address
            sign_message(message, self.identity.private_key)
            try:
                response = await provider.route(message.wire())
            except ProviderError as e:
                logger.error(f"Delivery of {message.id} to {recipient} via {recipient.provider} failed: {e}")
                raise

        message.local = LocalInfo(delivered_via=DeliveryMethod.EXTERNAL.value)
        path = self.store.save_sent(message)
        status = str(response.get("status") or "sent")
        logger.info(f"Sent {message.id} to {recipient} via {recipient.provider} ({status})")
        return DeliveryResult(
            message_id=message.id, recipient=str(recipient), method=DeliveryMethod.EXTERNAL,
            provider=recipient.provider, status=status, path=str(path),
        )

    async def _send_local(self, message: Message, recipient: Address, files: list[ValidatedFile]) -> DeliveryResult:
        registration = self.registrations.get(self.resolver.local_domain)
        cause: Optional[ProviderError] = None
        if registration is None:
            try:
                registration = await self._register_mesh()
            except ProviderError as e:
                logger.warning(f"Mesh auto-registration failed: {e}")
                cause = e

        if registration is not None:
            try:
                return await self._route_mesh(message, recipient, files, registration)
            except ProviderUnreachableError as e:
                logger.warning(f"Mesh unreachable while sending {message.id}: {e}")
                cause = e

        return self._deliver_filesystem(message, recipient, files, cause)

    async def _route_mesh(self, message: Message, recipient: Address, files: list[ValidatedFile],
                          registration: Registration) -> DeliveryResult:
        async with self._provider(registration) as mesh:
            message.payload.attachments = [await self.attachments.upload(f, mesh) for f in files]
            sign_message(message, self.identity.private_key)
            response = await mesh.route(message.wire())

        message.local = LocalInfo(delivered_via=DeliveryMethod.MESH.value)
        path = self.store.save_sent(message)
        status = str(response.get("status") or "sent")
        logger.info(f"Sent {message.id} to {recipient} via mesh ({status})")
        return DeliveryResult(
            message_id=message.id, recipient=str(recipient), method=DeliveryMethod.MESH,
            provider=registration.provider, status=status, path=str(path),
        )

    def _colocated_root(self, recipient: Address) -> Optional[Path]:
        """The recipient's identity directory, only if it exists here with the same tenant."""
        try:
            name = validate_agent_name(recipient.name)
        except InvalidInputError:
            return None
        root = Path(self.settings.agents_base).expanduser() / name
        if not (root / "config.json").is_file():
            return None
        try:
            config = load_identity_config(root)
        except ConfigError as e:
            logger.warning(f"Ignoring unreadable identity at {root}: {e}")
            return None
        if config.agent.tenant.lower() != recipient.tenant.lower():
            logger.warning(f"Identity at {root} belongs to tenant {config.agent.tenant}, not {recipient.tenant}")
            return None
        return root

    def _deliver_filesystem(self, message: Message, recipient: Address, files: list[ValidatedFile],
                            cause: Optional[ProviderError]) -> DeliveryResult:
        root = self._colocated_root(recipient)
        if root is None:
            reason = f" ({cause.message})" if cause else ""
            raise RecipientNotFoundError(
                f"Could not deliver to {recipient}: the mesh at {self.settings.mesh_url} is unavailable{reason} "
                f"and no identity for '{recipient.name}' exists on this host. Start the mesh or check the address.",
                str(recipient),
            )

        stored = [self.attachments.store_local(f) for f in files]
        for att in stored:
            att.download_url = Path(att.local_path).resolve().as_uri()
        message.payload.attachments = stored
        sign_message(message, self.identity.private_key)

        # The recipient copy is rebuilt from the wire form, which drops local-only fields.
        inbound = Message.model_validate(message.wire())
        valid = verify_message(inbound, self.identity.public_key)
        inbound.local = LocalInfo(delivered_via=DeliveryMethod.FILESYSTEM.value)
        apply_security(
            inbound,
            load_identity_config(root).agent.tenant,
            valid,
            SignatureStatus.VALID if valid else SignatureStatus.INVALID,
        )
        MessageStore(root / "messages").save_inbox(inbound)

        message.local = LocalInfo(delivered_via=DeliveryMethod.FILESYSTEM.value)
        path = self.store.save_sent(message)
        logger.info(f"Delivered {message.id} to {recipient} through the local filesystem")
        return DeliveryResult(
            message_id=message.id, recipient=str(recipient), method=DeliveryMethod.FILESYSTEM,
            provider=recipient.provider, status="delivered", path=str(path),
        )

    # Reply

    async def reply(
        self,
        message_id: str,
        body: str,
        *,
        type: str = MessageType.RESPONSE.value,
        priority: Optional[str] = None,
        context: Optional[Any] = None,
        attachments: Sequence[PathLike] = (),
    ) -> DeliveryResult:
        original = self.store.get(message_id, "inbox")
        return await self.send(
            original.envelope.from_,
            reply_subject(original.envelope.subject),
            body,
            type=type,
            priority=priority or original.envelope.priority,
            in_reply_to=original.id,
            context=context,
            attachments=attachments,
            thread_id=original.envelope.thread_id,
        )

    # Registration

    async def _register_mesh(self, tenant: Optional[str] = None, name: Optional[str] = None) -> Registration:
        domain = self.resolver.local_domain
        async with self.provider_factory.create(ProviderKind.MESH, domain, self.settings.mesh_api_url) as mesh:
            registration = await mesh.register(self.identity, tenant or self.identity.tenant, name)
        self.registrations.save(registration)
        logger.info(f"Registered with the mesh at {self.settings.mesh_url} as {registration.address}")
        return registration

    async def register(
        self,
        provider: str,
        tenant: Optional[str] = None,
        *,
        name: Optional[str] = None,
        api_url: Optional[str] = None,
        force: bool = False,
    ) -> Registration:
        existing = self.registrations.get(provider)
        if existing is not None and not force:
            logger.info(f"Already registered with {provider} as {existing.address}")
            return existing
        if self.resolver.is_local_provider(provider):
            return await self._register_mesh(tenant, name)

        url = provider_api_url(provider, api_url)
        async with self.provider_factory.create(ProviderKind.EXTERNAL, provider.lower(), url) as client:
            registration = await client.register(self.identity, tenant or self.identity.tenant, name)
        self.registrations.save(registration)
        logger.info(f"Registered with {provider} as {registration.address}")
        return registration

    # Fetch

    async def fetch(self, provider: Optional[str] = None, ack: bool = True) -> FetchResult:
        if provider:
            registration = self.registrations.get(provider)
            if registration is None:
                raise NotRegisteredError(provider)
            registrations = [registration]
        else:
            registrations = self.registrations.all()

        result = FetchResult()
        for registration in registrations:
            try:
                async with self._provider(registration) as client:
                    for item in await client.fetch():
                        await self._ingest(item, registration, client, ack, result)
            except ProviderError as e:
                logger.error(f"Fetching from {registration.provider} failed: {e}")
                result.errors[registration.provider] = e.message
        return result

    async def _ingest(self, item: dict[str, Any], registration: Registration, client: HttpProvider,
                      ack: bool, result: FetchResult) -> None:
        raw = item.get("message") if isinstance(item.get("message"), dict) else item
        message = parse_message(raw)
        if message is None:
            envelope = raw.get("envelope") if isinstance(raw, dict) else None
            result.skipped.append(str(envelope.get("id", "?")) if isinstance(envelope, dict) else "?")
            return
        try:
            validate_message_id(message.id)
        except InvalidInputError:
            logger.warning(f"Skipping message with invalid id {message.id!r} from {registration.provider}")
            result.skipped.append(message.id)
            return

        if not self.store.contains(message.id):
            status = self._signature_status(raw, message, item.get("sender_public_key"))
            for att in message.payload.attachments:
                att.local_path = None
            # Never trust a provider-supplied local block.
            message.local = LocalInfo(fetched_from=registration.provider, delivered_via=self._kind(registration.provider).value)
            apply_security(
                message,
                self.resolver.default_tenant,
                status in (SignatureStatus.VALID, SignatureStatus.UNVERIFIED),
                status,
            )
            self.store.save_inbox(message)
            result.fetched.append(message.id)
        else:
            result.skipped.append(message.id)

        if ack:
            try:
                await client.ack(message.id)
            except ProviderError as e:
                logger.warning(f"Could not acknowledge {message.id} on {registration.provider}: {e}")

    def _signature_status(self, raw: dict[str, Any], message: Message,
                          sender_key: Optional[str]) -> SignatureStatus:
        if not message.envelope.signature:
            return SignatureStatus.MISSING
        public_key = None
        if sender_key:
            try:
                public_key = load_public_key(sender_key)
            except CryptoError as e:
                logger.warning(f"Unusable sender key for {message.id}: {e}")
                return SignatureStatus.INVALID
        if public_key is None:
            public_key = self._colocated_public_key(message.envelope.from_)
        if public_key is None:
            logger.warning(f"No public key known for {message.envelope.from_}; signature on {message.id} unverified")
            return SignatureStatus.UNVERIFIED
        return SignatureStatus.VALID if verify_message(raw, public_key) else SignatureStatus.INVALID

    def _colocated_public_key(self, sender: str):
        address = self.resolver.resolve(sender)
        if not address.is_local:
            return None
        root = self._colocated_root(address)
        if root is None:
            return None
        try:
            return load_public_key((root / "keys" / "public.pem").read_text())
        except (OSError, CryptoError) as e:
            logger.warning(f"Unreadable public key for {sender}: {e}")
            return None

    # Attachments

    @asynccontextmanager
    async def _source_provider(self, message: Message) -> AsyncIterator[Optional[HttpProvider]]:
        fetched_from = message.local.fetched_from if message.local else None
        registration = self.registrations.get(fetched_from) if fetched_from else None
        if registration is None:
            yield None
            return
        provider = self._provider(registration)
        try:
            yield provider
        finally:
            await provider.close()

    async def download_attachment(
        self,
        message_id: str,
        attachment_id: str,
        dest_dir: PathLike,
        *,
        allow_suspicious: bool = False,
        box: str = "inbox",
    ) -> Path:
        message = self.store.get(message_id, box)
        for att in message.payload.attachments:
            if att.id == attachment_id:
                async with self._source_provider(message) as provider:
                    return await self.attachments.download(att, dest_dir, provider, allow_suspicious)
        raise InvalidInputError(f"Message {message_id} has no attachment {attachment_id}")

    async def download_all(
        self,
        message_id: str,
        dest_dir: PathLike,
        *,
        allow_suspicious: bool = False,
        box: str = "inbox",
    ) -> list[DownloadReport]:
        message = self.store.get(message_id, box)
        async with self._source_provider(message) as provider:
            return await self.attachments.download_all(message.payload.attachments, dest_dir, provider, allow_suspicious)
