"""Gmail tool executors.

Gmail paginates with its own ``pageToken``; executors walk those tokens
internally and hand the client a codec cursor instead, so every paginated
tool in the gateway speaks the same cursor format.
"""
import base64
import re
from typing import Any, Dict, List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from credentials import Credential
from errors import UpstreamPermanent
from permissions import PermissionLevel
from registry import ToolContext, ToolDefinition
from response_filters import _header, _iter_parts, filter_message_summary, message_attachments
from schema import CURSOR_PROPERTY, IntegerSchema, StringSchema, object_schema
from utils import logger

SEARCH_PAGE_SIZE = 20
SEARCH_MAX_PAGE_SIZE = 50
LIST_PAGE_MAX = 500
BODY_MAX_CHARS = 5000
ATTACHMENT_MAX_BYTES = 1024 * 1024
IMAGE_MIME_TYPES = ("image/png", "image/jpeg", "image/jpg", "image/gif", "image/webp")
SUMMARY_HEADERS = ["Subject", "From", "Date"]


def build_gmail_service(credential: Credential):
    creds = Credentials(token=credential.access_token)
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


async def _gmail(ctx: ToolContext):
    credential = await ctx.credential("gmail")
    return build_gmail_service(credential)


async def _page_of_message_ids(ctx: ToolContext, service, query: str, offset: int, page_size: int) -> List[str]:
    """Message ids ``[offset, offset + page_size)`` for the query, walking Gmail's page tokens."""
    ids: List[str] = []
    page_token: Optional[str] = None
    wanted = offset + page_size
    while len(ids) < wanted:
        kwargs: Dict[str, Any] = {"userId": "me", "q": query, "maxResults": min(LIST_PAGE_MAX, wanted - len(ids))}
        if page_token:
            kwargs["pageToken"] = page_token
        response = await ctx.call_upstream(
            lambda: service.users().messages().list(**kwargs).execute(), "Gmail messages.list")
        ids.extend(m["id"] for m in response.get("messages") or [])
        page_token = response.get("nextPageToken")
        if not page_token:
            break
    return ids[offset:wanted]


async def _get_message(ctx: ToolContext, service, message_id: str, fmt: str = "full") -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"userId": "me", "id": message_id, "format": fmt}
    if fmt == "metadata":
        kwargs["metadataHeaders"] = SUMMARY_HEADERS
    return await ctx.call_upstream(
        lambda: service.users().messages().get(**kwargs).execute(), "Gmail messages.get")


def _page_size(args: Dict[str, Any]) -> int:
    return min(args.get("maxResults") or SEARCH_PAGE_SIZE, SEARCH_MAX_PAGE_SIZE)


def _decode_body(data: Optional[str]) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _strip_html(html: str) -> str:
    text = re.sub(r"(?is)<(script|style).*?</\1>", " ", html)
    text = re.sub(r"(?s)<[^>]+>", " ", text)
    return re.sub(r"[ \t\r\f\v]+", " ", text).strip()


def message_body_text(message: Dict[str, Any]) -> str:
    plain, html = None, None
    for part in _iter_parts(message.get("payload") or {}):
        if part.get("filename"):
            continue
        mime = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if mime == "text/plain" and plain is None and data:
            plain = _decode_body(data)
        elif mime == "text/html" and html is None and data:
            html = _decode_body(data)
    if plain is not None:
        return plain
    if html is not None:
        return _strip_html(html)
    return message.get("snippet") or ""


def _size_label(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size / 1024 / 1024:.2f} MB"
    return f"{size / 1024:.1f} KB"


async def search_gmail(ctx: ToolContext, args: Dict[str, Any]):
    params = ctx.cursors.parse_params(args, _page_size(args))
    service = await _gmail(ctx)
    query = args["query"]
    ids = await _page_of_message_ids(ctx, service, query, params.offset, params.page_size)
    emails = []
    for message_id in ids:
        message = await _get_message(ctx, service, message_id, fmt="metadata")
        emails.append(filter_message_summary(message))
    return ctx.cursors.paginate(emails, len(ids), params, {"query": query}).to_dict()


async def get_email_content(ctx: ToolContext, args: Dict[str, Any]):
    service = await _gmail(ctx)
    message = await _get_message(ctx, service, args["messageId"])
    headers = (message.get("payload") or {}).get("headers") or []
    body = message_body_text(message)
    if len(body) > BODY_MAX_CHARS:
        body = body[:BODY_MAX_CHARS] + "... [truncated]"
    return {
        "id": message.get("id"),
        "threadId": message.get("threadId"),
        "subject": _header(headers, "Subject"),
        "from": _header(headers, "From"),
        "to": _header(headers, "To"),
        "date": _header(headers, "Date"),
        "body": body,
        "attachments": message_attachments(message),
    }


async def download_attachment(ctx: ToolContext, args: Dict[str, Any]):
    service = await _gmail(ctx)
    message_id, attachment_id = args["messageId"], args["attachmentId"]
    message = await _get_message(ctx, service, message_id)
    described = next((a for a in message_attachments(message) if a["attachmentId"] == attachment_id), None)
    if described is None:
        raise UpstreamPermanent(f"Attachment not found: {attachment_id} in message {message_id}", 404)

    info = {
        "filename": described["filename"],
        "mimeType": described["mimeType"],
        "size": described["size"],
        "sizeFormatted": _size_label(described["size"]),
    }
    if described["size"] > ATTACHMENT_MAX_BYTES:
        info["note"] = "Attachment exceeds 1MB limit. Cannot be displayed or processed inline."
        return info

    attachment = await ctx.call_upstream(
        lambda: service.users().messages().attachments().get(
            userId="me", messageId=message_id, id=attachment_id).execute(),
        "Gmail attachments.get",
    )
    raw = attachment.get("data") or ""
    data = base64.b64encode(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))).decode("ascii")
    mime = (described["mimeType"] or "").lower()
    if mime in IMAGE_MIME_TYPES:
        info["inlineImage"] = {"data": data, "mimeType": mime}
        info["note"] = "Image attachment returned as image content."
    else:
        info["data"] = data
        info["note"] = "Non-image attachment. Base64 data included for processing."
    logger.info("Attachment %s (%s) downloaded for %s", described["filename"], info["sizeFormatted"], ctx.user_id)
    return info


async def list_email_attachments(ctx: ToolContext, args: Dict[str, Any]):
    params = ctx.cursors.parse_params(args, _page_size(args))
    service = await _gmail(ctx)
    query = f"{args.get('query') or ''} has:attachment".strip()
    ids = await _page_of_message_ids(ctx, service, query, params.offset, params.page_size)
    attachments = []
    for message_id in ids:
        message = await _get_message(ctx, service, message_id)
        headers = (message.get("payload") or {}).get("headers") or []
        for attachment in message_attachments(message):
            attachments.append({
                "messageId": message_id,
                "subject": _header(headers, "Subject"),
                "from": _header(headers, "From"),
                "date": _header(headers, "Date"),
                **attachment,
            })
    # One cursor step covers one page of messages, however many attachments they carry
    return ctx.cursors.paginate(attachments, len(ids), params, {"query": query}).to_dict()


_MAX_RESULTS = IntegerSchema(description="Max emails per page (default: 20, max: 50)", minimum=1,
                             maximum=SEARCH_MAX_PAGE_SIZE)


def _tool(short_name, category, description, properties, required=(), handler=None) -> ToolDefinition:
    return ToolDefinition(
        short_name=short_name,
        provider="gmail",
        category=category,
        description=description,
        input_schema=object_schema(properties, required),
        required_level=PermissionLevel.READ_ONLY,
        handler=handler,
    )


GMAIL_TOOLS = [
    _tool("search_gmail", "search",
          "Search Gmail for emails using Gmail query syntax (from:, subject:, has:attachment, filename:pdf, "
          "after:YYYY/MM/DD). Paginated with cursor.",
          {
              "query": StringSchema(description="Gmail search query (same syntax as Gmail search box)", min_length=1),
              "maxResults": _MAX_RESULTS,
              "cursor": CURSOR_PROPERTY,
          },
          required=("query",), handler=search_gmail),
    _tool("get_email_content", "search",
          "Get full content of a specific email including body text and attachment list",
          {"messageId": StringSchema(description="The message ID from search_gmail results")},
          required=("messageId",), handler=get_email_content),
    _tool("download_attachment", "attachments",
          "Download an email attachment. Images are returned as viewable image content, other files as "
          "base64 data. Max size: 1MB.",
          {
              "messageId": StringSchema(description="The message ID containing the attachment"),
              "attachmentId": StringSchema(description="The attachment ID from get_email_content results"),
          },
          required=("messageId", "attachmentId"), handler=download_attachment),
    _tool("list_email_attachments", "attachments",
          "List all attachments from emails matching a search query. Paginated with cursor.",
          {
              "query": StringSchema(description="Gmail search query (has:attachment is added automatically)"),
              "maxResults": _MAX_RESULTS,
              "cursor": CURSOR_PROPERTY,
          },
          handler=list_email_attachments),
]
