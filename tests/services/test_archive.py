import zipfile

import pytest

from clusterup.errors import ClusterUpError
from clusterup.services.archive import ArchiveService


def test_safe_extract_zip_extracts_terraform_binary(tmp_path):
    zip_path = tmp_path / "terraform.zip"
    with zipfile.ZipFile(zip_path, "w") as archive:
        archive.writestr("terraform", "#!/bin/sh\n")

    ArchiveService().safe_extract_zip(str(zip_path), str(tmp_path / "bin"))

    assert (tmp_path / "bin" / "terraform").read_text() == "#!/bin/sh\n"


def test_safe_extract_zip_blocks_path_traversal(tmp_path):
    zip_path = tmp_path / "evil.zip"
    with zipfile.ZipFile(zip_path, "w") as archive:
        archive.writestr("../escape.txt", "oops")

    with pytest.raises(ClusterUpError, match="Unsafe ZIP entry"):
        ArchiveService().safe_extract_zip(str(zip_path), str(tmp_path / "bin"))

    assert not (tmp_path / "escape.txt").exists()


def test_safe_extract_zip_rejects_invalid_archive(tmp_path):
    zip_path = tmp_path / "broken.zip"
    zip_path.write_text("not a zip", encoding="utf-8")

    with pytest.raises(ClusterUpError, match="Invalid ZIP archive"):
        ArchiveService().safe_extract_zip(str(zip_path), str(tmp_path / "bin"))
