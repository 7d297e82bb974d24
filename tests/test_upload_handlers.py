import unittest

from werkzeug.exceptions import ServiceUnavailable

from uploadhost.errors import ErrorKind, UploadAPIError
from uploadhost.storage import KeyGenerator, MemoryStorage
from uploadhost.uploads import (
    ALLOWED_MIME_TYPES,
    MAX_FILE_SIZE,
    IncomingFilePart,
    guess_content_type,
    handle_retrieval,
    handle_upload,
)


class FlakyStorage(MemoryStorage):
    """Memory storage whose writes start failing after *fail_after* successes."""

    def __init__(self, fail_after, error=None):
        super().__init__()
        self.fail_after = fail_after
        self.error = error or OSError("disk full")
        self.writes = 0

    def set_item_raw(self, key, data):
        if self.writes >= self.fail_after:
            raise self.error
        self.writes += 1
        super().set_item_raw(key, data)


def part(filename="a.txt", mime_type="text/plain", data=b"hello"):
    return IncomingFilePart(filename=filename, mime_type=mime_type, data=data)


class HandleUploadTests(unittest.TestCase):
    def setUp(self):
        self.storage = MemoryStorage()
        self.keys = KeyGenerator(clock=lambda: 1700000000.0)

    def upload(self, parts, storage=None):
        return handle_upload(parts, storage or self.storage, self.keys)

    def test_single_part_stored_under_generated_key(self):
        results = self.upload([part()])

        self.assertEqual(len(results), 1)
        result = results[0]
        self.assertEqual(result.filename, "1700000000000-a.txt")
        self.assertEqual(result.url, "/uploads/1700000000000-a.txt")
        self.assertTrue(result.success)
        self.assertEqual(
            result.to_dict(),
            {
                "filename": "1700000000000-a.txt",
                "url": "/uploads/1700000000000-a.txt",
                "success": True,
            },
        )
        self.assertEqual(self.storage.get_item_raw(result.filename), b"hello")

    def test_results_follow_request_order(self):
        parts = [
            part("one.png", "image/png", b"\x89PNG"),
            part("two.pdf", "application/pdf", b"%PDF"),
            part("three.gif", "image/gif", b"GIF89a"),
        ]
        results = self.upload(parts)

        self.assertEqual(
            [result.filename.split("-", 1)[1] for result in results],
            ["one.png", "two.pdf", "three.gif"],
        )
        for sent, result in zip(parts, results):
            self.assertEqual(handle_retrieval(result.filename, self.storage), sent.data)

    def test_identical_names_in_one_request_get_distinct_keys(self):
        results = self.upload([part(), part(data=b"again")])

        self.assertEqual(results[0].filename, "1700000000000-a.txt")
        self.assertEqual(results[1].filename, "1700000000001-a.txt")
        self.assertEqual(len(self.storage.get_keys()), 2)

    def test_no_parts(self):
        with self.assertRaises(UploadAPIError) as context:
            self.upload([])
        self.assertIs(context.exception.kind, ErrorKind.NO_FILES)
        self.assertEqual(context.exception.status_code, 400)
        self.assertEqual(context.exception.status_message, "No files uploaded")

    def test_every_allowed_type_is_accepted(self):
        parts = [part(f"file{index}", mime) for index, mime in enumerate(ALLOWED_MIME_TYPES)]
        self.assertEqual(len(self.upload(parts)), len(ALLOWED_MIME_TYPES))

    def test_size_limit_is_inclusive(self):
        results = self.upload([part(data=b"x" * MAX_FILE_SIZE)])
        self.assertEqual(len(results), 1)

    def test_oversize_part_fails_whole_request_without_persisting(self):
        parts = [part("first.txt"), part("big.txt", data=b"x" * (MAX_FILE_SIZE + 1))]

        with self.assertRaises(UploadAPIError) as context:
            self.upload(parts)

        error = context.exception
        self.assertIs(error.kind, ErrorKind.FILE_TOO_LARGE)
        self.assertEqual(error.status_code, 400)
        self.assertEqual(error.status_message, "File big.txt exceeds maximum size of 5MB")
        self.assertEqual(self.storage.get_keys(), [])

    def test_disallowed_type_names_the_type(self):
        with self.assertRaises(UploadAPIError) as context:
            self.upload([part("run.exe", "application/x-msdownload")])

        error = context.exception
        self.assertIs(error.kind, ErrorKind.TYPE_NOT_ALLOWED)
        self.assertEqual(
            error.status_message,
            "File type application/x-msdownload not allowed. Allowed types: "
            "image/jpeg, image/png, image/gif, application/pdf, application/msword, text/plain",
        )

    def test_absent_type_reported_as_unknown(self):
        with self.assertRaises(UploadAPIError) as context:
            self.upload([part(mime_type=None)])
        self.assertIn("File type unknown not allowed", context.exception.status_message)
        self.assertEqual(self.storage.get_keys(), [])

    def test_part_without_filename_is_skipped(self):
        with self.assertLogs("uploadhost.lifecycle", level="WARNING") as logs:
            results = self.upload([part(filename=None), part("kept.txt")])

        self.assertEqual([result.filename for result in results], ["1700000000000-kept.txt"])
        self.assertTrue(any("upload_part_skipped" in line for line in logs.output))

    def test_only_filename_less_parts_returns_empty_list(self):
        self.assertEqual(self.upload([part(filename=None), part(filename="")]), [])
        self.assertEqual(self.storage.get_keys(), [])

    def test_size_and_type_checked_before_filename(self):
        with self.assertRaises(UploadAPIError) as context:
            self.upload([part(filename=None, data=b"x" * (MAX_FILE_SIZE + 1))])
        self.assertIs(context.exception.kind, ErrorKind.FILE_TOO_LARGE)
        self.assertIn("File unknown exceeds", context.exception.status_message)

        with self.assertRaises(UploadAPIError) as context:
            self.upload([part(filename=None, mime_type="application/zip")])
        self.assertIs(context.exception.kind, ErrorKind.TYPE_NOT_ALLOWED)

    def test_storage_failure_maps_to_generic_error_and_rolls_back(self):
        flaky = FlakyStorage(fail_after=1)

        with self.assertLogs("uploadhost.lifecycle", level="ERROR"):
            with self.assertRaises(UploadAPIError) as context:
                self.upload([part("one.txt"), part("two.txt")], storage=flaky)

        error = context.exception
        self.assertIs(error.kind, ErrorKind.UPLOAD_FAILED)
        self.assertEqual(error.to_payload(), {"statusCode": 500, "statusMessage": "Error uploading files"})
        self.assertIsInstance(error.__cause__, OSError)
        self.assertEqual(flaky.get_keys(), [])

    def test_http_errors_pass_through_unchanged(self):
        flaky = FlakyStorage(fail_after=0, error=ServiceUnavailable())
        with self.assertRaises(ServiceUnavailable):
            self.upload([part()], storage=flaky)


class HandleRetrievalTests(unittest.TestCase):
    def setUp(self):
        self.storage = MemoryStorage()

    def test_returns_stored_bytes(self):
        self.storage.set_item_raw("1-a.txt", b"hello")
        self.assertEqual(handle_retrieval("1-a.txt", self.storage), b"hello")

    def test_path_required(self):
        for path in (None, ""):
            with self.subTest(path=path):
                with self.assertRaises(UploadAPIError) as context:
                    handle_retrieval(path, self.storage)
                self.assertIs(context.exception.kind, ErrorKind.PATH_REQUIRED)
                self.assertEqual(context.exception.status_message, "Path is required")

    def test_missing_key_is_not_found(self):
        with self.assertRaises(UploadAPIError) as context:
            handle_retrieval("never-written.txt", self.storage)
        self.assertIs(context.exception.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(context.exception.status_code, 404)


class GuessContentTypeTests(unittest.TestCase):
    def test_known_extension(self):
        self.assertEqual(guess_content_type("1700000000000-photo.png"), "image/png")

    def test_unknown_extension_falls_back(self):
        self.assertEqual(guess_content_type("1700000000000-README"), "application/octet-stream")

    def test_types_outside_allowlist_are_served_as_bytes(self):
        for key in ("1-x.html", "1-x.htm", "1-x.svg", "1-x.js", "1-x.xml"):
            with self.subTest(key=key):
                self.assertEqual(guess_content_type(key), "application/octet-stream")


if __name__ == "__main__":
    unittest.main()
