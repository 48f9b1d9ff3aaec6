import base64

import pytest

import gmail_tools
from tests.conftest import USER


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class _Request:
    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return self._fn()


class FakeGmailService:
    """Mimics the googleapiclient chain users().messages().list(...).execute()."""

    def __init__(self, message_ids, page_size=2, messages=None, attachments=None):
        self.message_ids = message_ids
        self.page_size = page_size
        self.message_data = messages or {}
        self.attachment_data = attachments or {}
        self.list_calls = []
        self.get_calls = []
        self.attachment_calls = []

    def users(self):
        return self

    def messages(self):
        return self

    def attachments(self):
        return self

    def list(self, **kwargs):
        self.list_calls.append(kwargs)

        def run():
            start = int(kwargs.get("pageToken") or 0)
            end = start + min(kwargs["maxResults"], self.page_size)
            response = {"messages": [{"id": i} for i in self.message_ids[start:end]]}
            if end < len(self.message_ids):
                response["nextPageToken"] = str(end)
            return response

        return _Request(run)

    def get(self, **kwargs):
        if "messageId" in kwargs:
            self.attachment_calls.append(kwargs)
            return _Request(lambda: self.attachment_data[kwargs["id"]])
        self.get_calls.append(kwargs)
        return _Request(lambda: self.message_data.get(kwargs["id"]) or _message(kwargs["id"]))


def _message(message_id, subject="Invoice", parts=None, snippet="Please find attached"):
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "snippet": snippet,
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "Subject", "value": f"{subject} {message_id}"},
                {"name": "From", "value": "billing@supplier.test"},
                {"name": "To", "value": "pip@clinic.test"},
                {"name": "Date", "value": "Mon, 5 Feb 2024 09:00:00 +1100"},
            ],
            "parts": parts or [],
        },
    }


def _attachment_part(attachment_id, filename, mime, size):
    return {"filename": filename, "mimeType": mime, "body": {"attachmentId": attachment_id, "size": size}}


@pytest.fixture
def fake_gmail(monkeypatch):
    def install(service):
        monkeypatch.setattr(gmail_tools, "build_gmail_service", lambda credential: service)
        return service

    return install


@pytest.mark.asyncio
async def test_search_walks_native_page_tokens(gateway, fake_gmail):
    service = fake_gmail(FakeGmailService([f"m{i}" for i in range(7)], page_size=2))

    first = await gateway.execute_tool(USER, "gmail:search_gmail", {"query": "from:supplier", "maxResults": 3})
    assert [e["id"] for e in first["items"]] == ["m0", "m1", "m2"]
    assert first["query"] == "from:supplier"
    assert first["items"][0]["subject"] == "Invoice m0"
    assert service.get_calls[0]["format"] == "metadata"
    assert service.get_calls[0]["metadataHeaders"] == ["Subject", "From", "Date"]

    second = await gateway.execute_tool(USER, "gmail:search_gmail", {"query": "from:supplier",
                                                                     "cursor": first["nextCursor"]})
    assert [e["id"] for e in second["items"]] == ["m3", "m4", "m5"]

    third = await gateway.execute_tool(USER, "gmail:search_gmail", {"query": "from:supplier",
                                                                    "cursor": second["nextCursor"]})
    assert [e["id"] for e in third["items"]] == ["m6"]
    assert "nextCursor" not in third


@pytest.mark.asyncio
async def test_search_caps_page_size(gateway, fake_gmail):
    result = await gateway.execute_tool(USER, "gmail:search_gmail", {"query": "x", "maxResults": 80})
    assert result["metadata"]["reason"] == "schemaViolation"


@pytest.mark.asyncio
async def test_get_email_content_prefers_plain_text_and_truncates(gateway, fake_gmail):
    long_body = ("Amount due: $420. " * 400).encode()
    message = _message("m1", parts=[
        {"mimeType": "text/html", "body": {"data": _b64(b"<p>html version</p>")}},
        {"mimeType": "text/plain", "body": {"data": _b64(long_body)}},
        _attachment_part("att-1", "invoice.pdf", "application/pdf", 2048),
    ])
    fake_gmail(FakeGmailService([], messages={"m1": message}))

    result = await gateway.execute_tool(USER, "gmail:get_email_content", {"messageId": "m1"})
    assert result["subject"] == "Invoice m1"
    assert result["to"] == "pip@clinic.test"
    assert result["body"].startswith("Amount due: $420.")
    assert result["body"].endswith("... [truncated]")
    assert len(result["body"]) == 5000 + len("... [truncated]")
    assert result["attachments"][0]["filename"] == "invoice.pdf"


@pytest.mark.asyncio
async def test_get_email_content_falls_back_to_stripped_html(gateway, fake_gmail):
    message = _message("m2", parts=[{"mimeType": "text/html", "body": {"data": _b64(b"<p>Total <b>$80</b></p>")}}])
    fake_gmail(FakeGmailService([], messages={"m2": message}))
    result = await gateway.execute_tool(USER, "gmail:get_email_content", {"messageId": "m2"})
    assert result["body"] == "Total $80"


@pytest.mark.asyncio
async def test_download_image_attachment_inline(gateway, fake_gmail):
    png = b"\x89PNG\r\n\x1a\nfake"
    message = _message("m3", parts=[_attachment_part("att-img", "receipt.png", "image/png", len(png))])
    fake_gmail(FakeGmailService([], messages={"m3": message}, attachments={"att-img": {"data": _b64(png)}}))

    result = await gateway.execute_tool(USER, "gmail:download_attachment",
                                        {"messageId": "m3", "attachmentId": "att-img"})
    assert result["inlineImage"] == {"data": base64.b64encode(png).decode("ascii"), "mimeType": "image/png"}
    assert "data" not in result


@pytest.mark.asyncio
async def test_download_pdf_attachment_as_base64(gateway, fake_gmail):
    pdf = b"%PDF-1.4 invoice"
    message = _message("m4", parts=[_attachment_part("att-pdf", "invoice.pdf", "application/pdf", len(pdf))])
    fake_gmail(FakeGmailService([], messages={"m4": message}, attachments={"att-pdf": {"data": _b64(pdf)}}))

    result = await gateway.execute_tool(USER, "gmail:download_attachment",
                                        {"messageId": "m4", "attachmentId": "att-pdf"})
    assert base64.b64decode(result["data"]) == pdf
    assert result["sizeFormatted"] == "0.0 KB"


@pytest.mark.asyncio
async def test_oversized_attachment_not_downloaded(gateway, fake_gmail):
    message = _message("m5", parts=[_attachment_part("att-big", "scan.pdf", "application/pdf", 3 * 1024 * 1024)])
    service = fake_gmail(FakeGmailService([], messages={"m5": message}))

    result = await gateway.execute_tool(USER, "gmail:download_attachment",
                                        {"messageId": "m5", "attachmentId": "att-big"})
    assert result["sizeFormatted"] == "3.00 MB"
    assert "exceeds 1MB" in result["note"]
    assert service.attachment_calls == []


@pytest.mark.asyncio
async def test_missing_attachment(gateway, fake_gmail):
    fake_gmail(FakeGmailService([], messages={"m6": _message("m6")}))
    result = await gateway.execute_tool(USER, "gmail:download_attachment",
                                        {"messageId": "m6", "attachmentId": "nope"})
    assert result["metadata"] == {"reason": "upstreamPermanent", "statusCode": 404}


@pytest.mark.asyncio
async def test_list_email_attachments_adds_query_filter(gateway, fake_gmail):
    messages = {
        "m1": _message("m1", parts=[_attachment_part("a1", "inv1.pdf", "application/pdf", 10),
                                    _attachment_part("a2", "inv2.pdf", "application/pdf", 20)]),
        "m2": _message("m2", parts=[_attachment_part("a3", "receipt.jpg", "image/jpeg", 30)]),
    }
    service = fake_gmail(FakeGmailService(["m1", "m2"], messages=messages, page_size=10))

    result = await gateway.execute_tool(USER, "gmail:list_email_attachments", {"query": "from:supplier"})
    assert service.list_calls[0]["q"] == "from:supplier has:attachment"
    assert result["query"] == "from:supplier has:attachment"
    assert [a["filename"] for a in result["items"]] == ["inv1.pdf", "inv2.pdf", "receipt.jpg"]
    assert result["items"][2]["messageId"] == "m2"
    assert "nextCursor" not in result
