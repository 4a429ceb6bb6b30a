from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from quicksend.services.blob_store import (
    CompletedPart,
    IncompletePartsError,
    S3BlobStore,
    StorageUnavailable,
    content_disposition,
    validate_parts,
)


def _client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestValidateParts:
    def test_orders_and_shapes_parts(self):
        parts = [CompletedPart(2, '"b"'), CompletedPart(1, '"a"')]
        assert validate_parts(parts, 2) == [
            {"PartNumber": 1, "ETag": '"a"'},
            {"PartNumber": 2, "ETag": '"b"'},
        ]

    def test_missing_part_is_reported(self):
        parts = [CompletedPart(1, "a"), CompletedPart(2, "b")]
        with pytest.raises(IncompletePartsError) as exc:
            validate_parts(parts, expected_parts=3)
        assert exc.value.missing == [3]
        assert exc.value.expected == 3

    def test_blank_etag_counts_as_missing(self):
        with pytest.raises(IncompletePartsError) as exc:
            validate_parts([CompletedPart(1, "a"), CompletedPart(2, "  ")])
        assert exc.value.missing == [2]

    def test_gap_detected_without_expected_count(self):
        with pytest.raises(IncompletePartsError) as exc:
            validate_parts([CompletedPart(1, "a"), CompletedPart(3, "c")])
        assert exc.value.missing == [2]

    def test_empty_list_rejected(self):
        with pytest.raises(IncompletePartsError):
            validate_parts([])


def test_content_disposition_handles_non_ascii():
    header = content_disposition("résumé.pdf")
    assert header.startswith('attachment; filename="r?sum?.pdf"')
    assert "filename*=UTF-8''r%C3%A9sum%C3%A9.pdf" in header


class TestS3BlobStore:
    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def store(self, client):
        return S3BlobStore(client, "quicksend-files")

    @pytest.mark.asyncio
    async def test_issue_put_url_signs_content_type(self, store, client):
        client.generate_presigned_url.return_value = "https://signed"
        url = await store.issue_put_url("files/1/a.txt", "text/plain", 3600)
        assert url == "https://signed"
        client.generate_presigned_url.assert_called_once_with(
            "put_object",
            Params={"Bucket": "quicksend-files", "Key": "files/1/a.txt", "ContentType": "text/plain"},
            ExpiresIn=3600,
        )

    @pytest.mark.asyncio
    async def test_issue_get_url_sets_disposition(self, store, client):
        client.generate_presigned_url.return_value = "https://signed-get"
        await store.issue_get_url("files/1/a.txt", 7200, filename="a.txt")
        params = client.generate_presigned_url.call_args.kwargs["Params"]
        assert params["ResponseContentDisposition"].startswith("attachment;")

    @pytest.mark.asyncio
    async def test_head_object_missing_returns_none(self, store, client):
        client.head_object.side_effect = _client_error("404")
        assert await store.head_object("files/1/a.txt") is None

    @pytest.mark.asyncio
    async def test_head_object_reports_stored_size(self, store, client):
        client.head_object.return_value = {"ContentLength": 4096, "ETag": '"abc"'}
        assert await store.head_object("files/1/a.txt") == 4096
        client.head_object.assert_called_once_with(Bucket="quicksend-files", Key="files/1/a.txt")

    @pytest.mark.asyncio
    async def test_head_object_other_errors_raise(self, store, client):
        client.head_object.side_effect = _client_error("AccessDenied")
        with pytest.raises(StorageUnavailable):
            await store.head_object("files/1/a.txt")

    @pytest.mark.asyncio
    async def test_transport_errors_are_wrapped(self, store, client):
        client.delete_object.side_effect = EndpointConnectionError(endpoint_url="https://s3")
        with pytest.raises(StorageUnavailable) as exc:
            await store.delete_object("files/1/a.txt")
        assert exc.value.operation == "delete_object"

    @pytest.mark.asyncio
    async def test_complete_validates_before_calling_s3(self, store, client):
        with pytest.raises(IncompletePartsError):
            await store.complete_multipart_upload(
                "k", "mpu", [CompletedPart(1, "a")], expected_parts=2,
            )
        client.complete_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_complete_sends_sorted_parts(self, store, client):
        await store.complete_multipart_upload(
            "k", "mpu", [CompletedPart(2, "b"), CompletedPart(1, "a")], expected_parts=2,
        )
        client.complete_multipart_upload.assert_called_once_with(
            Bucket="quicksend-files",
            Key="k",
            UploadId="mpu",
            MultipartUpload={"Parts": [{"PartNumber": 1, "ETag": "a"}, {"PartNumber": 2, "ETag": "b"}]},
        )

    @pytest.mark.asyncio
    async def test_abort_never_raises(self, store, client):
        client.abort_multipart_upload.side_effect = _client_error("NoSuchUpload", "AbortMultipartUpload")
        await store.abort_multipart_upload("k", "mpu")
        client.abort_multipart_upload.assert_called_once()
