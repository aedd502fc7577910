import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

from icsync.document_source import FolderDocumentSource, HttpDocumentSource, build_document_source
from icsync.errors import SourceUnavailableError
from icsync.models import SourceConfig


class FolderDocumentSourceTests(unittest.TestCase):
    def test_reads_file_bytes(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            Path(temp_dir, "latest_cal.ics").write_bytes(b"BEGIN:VCALENDAR")
            self.assertEqual(FolderDocumentSource(temp_dir).fetch("latest_cal.ics"), b"BEGIN:VCALENDAR")

    def test_missing_file_is_not_found(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            self.assertIsNone(FolderDocumentSource(temp_dir).fetch("latest_cal.ics"))

    def test_missing_folder_is_unavailable(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with self.assertRaises(SourceUnavailableError):
                FolderDocumentSource(str(Path(temp_dir, "gone"))).fetch("latest_cal.ics")


class HttpDocumentSourceTests(unittest.TestCase):
    def _source(self, response: mock.Mock | None = None, error: Exception | None = None) -> HttpDocumentSource:
        session = mock.Mock()
        if error is not None:
            session.get.side_effect = error
        else:
            session.get.return_value = response
        return HttpDocumentSource("https://files.example.com/cal/", timeout_seconds=5, session=session)

    def test_downloads_document(self) -> None:
        response = mock.Mock(status_code=200, content=b"BEGIN:VCALENDAR")
        source = self._source(response)
        self.assertEqual(source.fetch("latest_cal.ics"), b"BEGIN:VCALENDAR")
        source.session.get.assert_called_once_with("https://files.example.com/cal/latest_cal.ics", timeout=5)

    def test_not_found(self) -> None:
        self.assertIsNone(self._source(mock.Mock(status_code=404)).fetch("latest_cal.ics"))

    def test_server_error_is_unavailable(self) -> None:
        response = mock.Mock(status_code=500)
        response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
        with self.assertRaises(SourceUnavailableError):
            self._source(response).fetch("latest_cal.ics")

    def test_connection_error_is_unavailable(self) -> None:
        with self.assertRaises(SourceUnavailableError):
            self._source(error=requests.ConnectionError("refused")).fetch("latest_cal.ics")

    def test_url_already_naming_document(self) -> None:
        source = HttpDocumentSource("https://files.example.com/latest_cal.ics", session=mock.Mock())
        self.assertEqual(source._url("latest_cal.ics"), "https://files.example.com/latest_cal.ics")


class BuildDocumentSourceTests(unittest.TestCase):
    def test_selects_by_kind(self) -> None:
        self.assertIsInstance(build_document_source(SourceConfig(kind="folder", location="/data")), FolderDocumentSource)
        self.assertIsInstance(
            build_document_source(SourceConfig(kind="http", location="https://files.example.com")),
            HttpDocumentSource,
        )

    def test_requires_location(self) -> None:
        with self.assertRaises(SourceUnavailableError):
            build_document_source(SourceConfig())


if __name__ == "__main__":
    unittest.main()
