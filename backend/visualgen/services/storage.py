import hashlib
import re
import time
from typing import Dict, Optional, Protocol

import httpx

from visualgen.core import config
from visualgen.schemas.visuals import VisualType
from visualgen.services.http_client import request_json
from visualgen.utils.time import epoch_ms

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


class UploadResponseError(ValueError):
    pass


class AssetStorage(Protocol):
    async def upload(self, image: bytes, key: str) -> str: ...


def slugify(word: str) -> str:
    return _SLUG_INVALID.sub("-", word.lower()).strip("-") or "word"


def build_asset_key(
    word: str, visual_type: VisualType, image: bytes, timestamp_ms: Optional[int] = None
) -> str:
    """``<word>-<type>-<epoch ms>-<content digest>``; unique per upload."""
    stamp = epoch_ms() if timestamp_ms is None else timestamp_ms
    digest = hashlib.sha1(image).hexdigest()[:8]
    return f"{slugify(word)}-{visual_type.value.lower()}-{stamp}-{digest}"


def sign_params(params: Dict[str, str], api_secret: str) -> str:
    payload = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha1(f"{payload}{api_secret}".encode()).hexdigest()


class CloudinaryStorage:
    def __init__(
        self,
        client: httpx.AsyncClient,
        cloud_name: str = config.CLOUDINARY_CLOUD_NAME,
        api_key: str = config.CLOUDINARY_API_KEY,
        api_secret: str = config.CLOUDINARY_API_SECRET,
        folder: str = config.CLOUDINARY_FOLDER,
    ) -> None:
        self._client = client
        self._cloud_name = cloud_name
        self._api_key = api_key
        self._api_secret = api_secret
        self._folder = folder

    @property
    def upload_url(self) -> str:
        return f"https://api.cloudinary.com/v1_1/{self._cloud_name}/image/upload"

    async def upload(self, image: bytes, key: str) -> str:
        params = {
            "folder": self._folder,
            "public_id": key,
            "timestamp": str(int(time.time())),
        }
        form = dict(params)
        form["api_key"] = self._api_key
        form["signature"] = sign_params(params, self._api_secret)
        data = await request_json(
            self._client,
            "POST",
            self.upload_url,
            headers={"Accept": "application/json"},
            data=form,
            files={"file": (f"{key}.png", image, "image/png")},
        )
        url = data.get("secure_url") if isinstance(data, dict) else None
        if not isinstance(url, str) or not url:
            raise UploadResponseError("upload response has no secure_url")
        return url
