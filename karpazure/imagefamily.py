"""Node image families and community gallery image resolution."""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from .models import (
    ALLOW_UNDEFINED_LABELS,
    ARCH_AMD64,
    ARCH_ARM64,
    HYPERV_GENERATION_V1,
    HYPERV_GENERATION_V2,
    LABEL_ARCH,
    LABEL_SKU_HYPERV_GENERATION,
    ExpiringCache,
    IncompatibleRequirementsError,
    InstanceType,
    NodeClass,
    Operator,
    Requirement,
    Requirements,
)

log = logging.getLogger(__name__)

AKS_UBUNTU_PUBLIC_GALLERY_URL = "AKSUbuntu-38d80f77-467a-481f-a8d4-09b6d4220bd2"

UBUNTU2204_IMAGE_FAMILY = "Ubuntu2204"
UBUNTU2204_GEN2_COMMUNITY_IMAGE = "2204gen2containerd"
UBUNTU2204_GEN1_COMMUNITY_IMAGE = "2204containerd"
UBUNTU2204_GEN2_ARM_COMMUNITY_IMAGE = "2204gen2arm64containerd"

NETWORK_PLUGIN_AZURE_CNI_OVERLAY = "overlay"
NETWORK_PLUGIN_KUBENET = "kubenet"

DEFAULT_MAX_PODS_AZURE_CNI_OVERLAY = 250
DEFAULT_MAX_PODS_KUBENET = 100
DEFAULT_MAX_PODS = 110

IMAGE_EXPIRATION_SECONDS = 3 * 24 * 60 * 60

_KUBERNETES_VERSION_CACHE_KEY = "kubernetesVersion"
_IMAGE_ID_FORMAT = "/CommunityGalleries/{}/images/{}/versions/{}"


@dataclass(frozen=True)
class DefaultImageOutput:
    """A community image an image family may use, with the instance requirements it needs."""

    community_image: str
    public_gallery_url: str
    requirements: Requirements


@dataclass(frozen=True)
class CommunityImageVersion:
    name: str
    published_date: datetime
    location: str | None = None
    type: str | None = None


class _VersionsClient(Protocol):
    def list_versions(
        self, location: str, public_gallery_name: str, gallery_image_name: str
    ) -> Iterable[CommunityImageVersion]: ...


class ImageFamily(ABC):
    """A family of node images, ordered from most to least preferred."""

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def default_images(self) -> list[DefaultImageOutput]: ...


def _image(community_image: str, arch: str, generation: str) -> DefaultImageOutput:
    return DefaultImageOutput(
        community_image=community_image,
        public_gallery_url=AKS_UBUNTU_PUBLIC_GALLERY_URL,
        requirements=Requirements(
            Requirement(LABEL_ARCH, Operator.IN, [arch]),
            Requirement(LABEL_SKU_HYPERV_GENERATION, Operator.IN, [generation]),
        ),
    )


@dataclass(frozen=True)
class Ubuntu2204(ImageFamily):
    def name(self) -> str:
        return UBUNTU2204_IMAGE_FAMILY

    def default_images(self) -> list[DefaultImageOutput]:
        # First match wins, so the gen2 amd64 image comes first.
        return [
            _image(UBUNTU2204_GEN2_COMMUNITY_IMAGE, ARCH_AMD64, HYPERV_GENERATION_V2),
            _image(UBUNTU2204_GEN1_COMMUNITY_IMAGE, ARCH_AMD64, HYPERV_GENERATION_V1),
            _image(UBUNTU2204_GEN2_ARM_COMMUNITY_IMAGE, ARCH_ARM64, HYPERV_GENERATION_V2),
        ]


class _ChangeMonitor:
    def __init__(self) -> None:
        self._last: dict[str, Any] = {}

    def has_changed(self, key: str, value: Any) -> bool:
        changed = self._last.get(key, _MISSING) != value
        self._last[key] = value
        return changed


_MISSING = object()


class ImageProvider:
    """Resolves image IDs for instance types from community galleries."""

    def __init__(
        self,
        versions_client: _VersionsClient,
        location: str,
        server_version: Callable[[], str] | None = None,
        kubernetes_version_cache: ExpiringCache | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._versions_client = versions_client
        self._location = location
        self._server_version = server_version
        self._kubernetes_version_cache = kubernetes_version_cache or ExpiringCache(clock=clock)
        self._image_cache = ExpiringCache(IMAGE_EXPIRATION_SECONDS, clock=clock)
        self._changes = _ChangeMonitor()

    def get(self, node_class: NodeClass, instance_type: InstanceType, image_family: ImageFamily) -> str:
        """Image ID for the instance type; images vary by architecture and generation."""
        if not node_class.is_empty_image_id():
            log.debug("Using user-provided image %s", node_class.image_id)
            return node_class.image_id
        for image in image_family.default_images():
            try:
                instance_type.requirements.compatible(image.requirements, ALLOW_UNDEFINED_LABELS)
            except IncompatibleRequirementsError:
                continue
            return self.get_image_id(image.community_image, image.public_gallery_url, node_class.image_version or "")
        raise LookupError(f"no compatible images found for instance type {instance_type.name}")

    def kube_server_version(self) -> str:
        cached = self._kubernetes_version_cache.get(_KUBERNETES_VERSION_CACHE_KEY)
        if cached is not None:
            return cached
        if self._server_version is None:
            raise RuntimeError("no kubernetes server version source configured")
        version = self._server_version().removeprefix("v")
        self._kubernetes_version_cache.set(_KUBERNETES_VERSION_CACHE_KEY, version)
        if self._changes.has_changed("kubernetes-version", version):
            log.debug("discovered kubernetes version %s", version)
        return version

    def get_image_id(self, community_image_name: str, public_gallery_url: str, version_name: str) -> str:
        """Image ID for the given version; an empty version selects the latest published."""
        key = f"{public_gallery_url}/{community_image_name}/{version_name}"
        cached = self._image_cache.get(key)
        if cached is not None:
            return cached
        if version_name == "":
            latest: CommunityImageVersion | None = None
            for version in self._versions_client.list_versions(
                self._location, public_gallery_url, community_image_name
            ):
                if latest is None or version.published_date > latest.published_date:
                    latest = version
            version_name = latest.name if latest else ""
        image_id = build_image_id(public_gallery_url, community_image_name, version_name)
        if self._changes.has_changed(key, image_id):
            log.info("discovered new image id %s", image_id)
        self._image_cache.set(key, image_id, IMAGE_EXPIRATION_SECONDS)
        return image_id


def build_image_id(public_gallery_url: str, community_image_name: str, image_version: str) -> str:
    return _IMAGE_ID_FORMAT.format(public_gallery_url, community_image_name, image_version)


_IMAGE_ID_PATTERN = _IMAGE_ID_FORMAT.format(
    "(?P<public_gallery_url>.*)", "(?P<community_image_name>.*)", "(?P<image_version>.*)"
)
_IMAGE_ID_RE = re.compile(_IMAGE_ID_PATTERN)


def parse_community_image_id_info(image_id: str) -> tuple[str, str, str]:
    """Split an image ID into gallery URL, community image name and version."""
    if image_id == "":
        raise ValueError(f'can not parse empty string. Expect it of the form "{_IMAGE_ID_PATTERN}"')
    match = _IMAGE_ID_RE.search(image_id)
    if match is None:
        raise ValueError(f"no matches while parsing image id {image_id}")
    return match["public_gallery_url"], match["community_image_name"], match["image_version"]


def get_image_family(family_name: str | None) -> ImageFamily:
    """The image family for a name; Ubuntu 22.04 is the only and default family."""
    return Ubuntu2204()


def get_max_pods(network_plugin: str) -> int:
    if network_plugin == NETWORK_PLUGIN_AZURE_CNI_OVERLAY:
        return DEFAULT_MAX_PODS_AZURE_CNI_OVERLAY
    if network_plugin == NETWORK_PLUGIN_KUBENET:
        return DEFAULT_MAX_PODS_KUBENET
    return DEFAULT_MAX_PODS