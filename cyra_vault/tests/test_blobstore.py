import json
import unittest
from unittest.mock import MagicMock

import requests

from cyra_vault.blobstore import (
    ContentBlob,
    InMemoryBlobStoreClient,
    PinataBlobStoreClient,
    compute_cid,
)
from cyra_vault.cipher import b64encode
from cyra_vault.errors import (
    ContentNotFound,
    MalformedContent,
    UploadFailed,
    UploadUnavailable,
)

CIPHERTEXT = b"ciphertext-bytes" + b"T" * 16
IV = b"I" * 12
TAG = b"T" * 16


def make_response(status=200, json_body=None, content=b"", reason="OK"):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.reason = reason
    response.content = content
    response.text = content.decode("utf-8", "replace")
    if json_body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = json_body
    return response


def blob_document() -> bytes:
    return ContentBlob(ciphertext=CIPHERTEXT, iv=IV, tag=TAG).to_bytes()


class ContentBlobTests(unittest.TestCase):
    def test_document_shape(self):
        document = json.loads(blob_document())
        self.assertEqual(set(document), {"ciphertext", "iv", "tag"})
        self.assertEqual(document["iv"], b64encode(IV))

    def test_split_uses_trailing_tag(self):
        blob = ContentBlob.from_bytes(blob_document())
        ciphertext, tag = blob.split()
        self.assertEqual(ciphertext, b"ciphertext-bytes")
        self.assertEqual(tag, TAG)

    def test_split_rejects_short_ciphertext(self):
        with self.assertRaises(MalformedContent):
            ContentBlob(ciphertext=b"short", iv=IV, tag=TAG).split()

    def test_missing_fields_are_malformed(self):
        raw = json.dumps({"ciphertext": "AAAA", "iv": "AAAA"}).encode()
        with self.assertRaises(MalformedContent) as ctx:
            ContentBlob.from_bytes(raw)
        self.assertIn("tag", str(ctx.exception))

    def test_non_json_and_bad_base64_are_malformed(self):
        with self.assertRaises(MalformedContent):
            ContentBlob.from_bytes(b"<html>gateway error</html>")
        with self.assertRaises(MalformedContent):
            ContentBlob.from_bytes(
                json.dumps({"ciphertext": "!!", "iv": "AAAA", "tag": "AAAA"}).encode()
            )


class InMemoryBlobStoreTests(unittest.TestCase):
    def test_identical_bytes_share_a_cid(self):
        store = InMemoryBlobStoreClient()
        first = store.upload(CIPHERTEXT, IV, TAG)
        second = store.upload(CIPHERTEXT, IV, TAG)
        self.assertEqual(first.cid, second.cid)
        self.assertEqual(first.cid, compute_cid(blob_document()))
        self.assertTrue(first.cid.startswith("bafkrei"))
        self.assertEqual(first.size, len(blob_document()))

    def test_download_roundtrip_and_missing(self):
        store = InMemoryBlobStoreClient()
        cid = store.upload(CIPHERTEXT, IV, TAG).cid
        blob = store.download(cid)
        self.assertEqual((blob.ciphertext, blob.iv, blob.tag), (CIPHERTEXT, IV, TAG))
        with self.assertRaises(ContentNotFound):
            store.download("bafkreimissing")


class PinataBlobStoreTests(unittest.TestCase):
    def make_client(self, **kwargs):
        client = PinataBlobStoreClient("jwt-token", **kwargs)
        client._session = MagicMock()
        return client

    def test_upload_without_jwt_is_unavailable(self):
        client = PinataBlobStoreClient(None)
        client._session = MagicMock()
        with self.assertRaises(UploadUnavailable):
            client.upload(CIPHERTEXT, IV, TAG)
        client._session.post.assert_not_called()

    def test_upload_posts_document_and_returns_cid(self):
        client = self.make_client()
        client.session.post.return_value = make_response(
            json_body={"data": {"cid": "bafkreiabc", "size": 123}}
        )
        result = client.upload(CIPHERTEXT, IV, TAG)
        self.assertEqual(result.cid, "bafkreiabc")
        self.assertEqual(result.size, 123)

        _, kwargs = client.session.post.call_args
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer jwt-token")
        filename, body, content_type = kwargs["files"]["file"]
        self.assertEqual(filename, "encrypted-data.json")
        self.assertEqual(content_type, "application/json")
        self.assertEqual(body, blob_document())
        self.assertEqual(kwargs["data"]["network"], "public")

    def test_upload_size_falls_back_to_document_length(self):
        client = self.make_client()
        client.session.post.return_value = make_response(
            json_body={"data": {"cid": "bafkreiabc"}}
        )
        self.assertEqual(client.upload(CIPHERTEXT, IV, TAG).size, len(blob_document()))

    def test_upload_error_includes_status_and_message(self):
        client = self.make_client()
        client.session.post.return_value = make_response(
            status=401,
            json_body={"error": {"message": "Invalid JWT"}},
            reason="Unauthorized",
        )
        with self.assertRaises(UploadFailed) as ctx:
            client.upload(CIPHERTEXT, IV, TAG)
        self.assertEqual(ctx.exception.status, 401)
        self.assertIn("Invalid JWT", str(ctx.exception))
        self.assertTrue(ctx.exception.retryable)

    def test_upload_transport_error(self):
        client = self.make_client()
        client.session.post.side_effect = requests.ConnectionError("boom")
        with self.assertRaises(UploadFailed) as ctx:
            client.upload(CIPHERTEXT, IV, TAG)
        self.assertIsNone(ctx.exception.status)

    def test_download_from_configured_gateway(self):
        client = self.make_client(gateway="example.mypinata.cloud")
        client.session.get.return_value = make_response(content=blob_document())
        blob = client.download("bafkreiabc")
        self.assertEqual(blob.iv, IV)
        client.session.get.assert_called_once_with(
            "https://example.mypinata.cloud/ipfs/bafkreiabc", timeout=30.0
        )

    def test_download_falls_back_to_public_gateway_once(self):
        client = self.make_client()
        client.session.get.side_effect = [
            make_response(status=504, reason="Gateway Timeout"),
            make_response(content=blob_document()),
        ]
        blob = client.download("bafkreiabc")
        self.assertEqual(blob.tag, TAG)
        urls = [call.args[0] for call in client.session.get.call_args_list]
        self.assertEqual(
            urls,
            [
                "https://gateway.pinata.cloud/ipfs/bafkreiabc",
                "https://ipfs.io/ipfs/bafkreiabc",
            ],
        )

    def test_download_not_found_when_both_gateways_fail(self):
        client = self.make_client()
        client.session.get.side_effect = [
            requests.ConnectionError("dns"),
            make_response(status=404, reason="Not Found"),
        ]
        with self.assertRaises(ContentNotFound) as ctx:
            client.download("bafkreiabc")
        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(ctx.exception.cid, "bafkreiabc")
        self.assertEqual(client.session.get.call_count, 2)

    def test_download_malformed_content(self):
        client = self.make_client()
        client.session.get.return_value = make_response(
            content=json.dumps({"ciphertext": "AAAA"}).encode()
        )
        with self.assertRaises(MalformedContent):
            client.download("bafkreiabc")

    def test_session_is_created_lazily_and_reused(self):
        client = PinataBlobStoreClient("jwt-token")
        self.assertIsNone(client._session)
        session = client.session
        self.assertIsInstance(session, requests.Session)
        self.assertIs(client.session, session)


if __name__ == "__main__":
    unittest.main()
