# horizon/core/storage_utils.py
from supabase import AsyncClient

ALLOWED_IMAGE_CONTENT_TYPES: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}

MAX_AVATAR_BYTES = 5 * 1024 * 1024  # 5MB


def avatar_path(user_id: str, content_type: str) -> str:
    """
    Object path for a user's avatar inside the bucket.

    Example:
        avatar_path("abc", "image/png") -> "avatars/abc.png"
    """
    ext = ALLOWED_IMAGE_CONTENT_TYPES.get(content_type, "jpg")
    return f"avatars/{user_id}.{ext}"


async def upload_to_storage(
    client: AsyncClient,
    bucket: str,
    path: str,
    file_bytes: bytes,
    content_type: str,
) -> str:
    """
    Upload bytes to Supabase Storage and return the public URL.

    If a file already exists at this path, it is overwritten
    thanks to the 'upsert' option.

    Raises:
        Any exception raised by the Supabase client if the upload fails.
    """
    storage = client.storage.from_(bucket)
    await storage.upload(path, file_bytes, {"upsert": "true", "content-type": content_type})
    return await storage.get_public_url(path)


def extract_path_from_public_url(url: str, bucket: str) -> str | None:
    """
    Given a public URL, extract the object path relative to the bucket.

    Example:
        https://<proj>.supabase.co/storage/v1/object/public/avatars/avatars/u.png
        -> 'avatars/u.png'
    """
    marker = f"/storage/v1/object/public/{bucket}/"
    idx = url.find(marker)
    if idx == -1:
        return None
    return url[idx + len(marker) :]


async def delete_public_url(client: AsyncClient, bucket: str, url: str) -> None:
    """
    Delete a file by its public URL.
    No-op if the URL does not belong to this bucket.
    """
    path = extract_path_from_public_url(url, bucket)
    if path:
        await client.storage.from_(bucket).remove([path])
