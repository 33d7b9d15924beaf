"""Tests for YAML manifest loading and store seeding."""

from pathlib import Path

import pytest

from cfoperator.config import MAX_MANIFEST_FILE_SIZE_BYTES
from cfoperator.manifests import (
    ManifestLoadError,
    load_manifest_file,
    load_manifests,
    seed_store,
)
from cfoperator.models import CFApp, CFSecurityGroup, CFTask, Secret
from cfoperator.store import InMemoryStore

APP_AND_TASK = """\
apiVersion: korifi.cloudfoundry.org/v1alpha1
kind: CFApp
metadata:
  name: app-1
  namespace: cf-space-1
spec:
  displayName: my-app
  desiredState: STARTED
  currentDropletRef:
    name: build-1
---
apiVersion: korifi.cloudfoundry.org/v1alpha1
kind: CFTask
metadata:
  name: task-1
  namespace: cf-space-1
spec:
  command: rake db:migrate
  appRef:
    name: app-1
"""

SECURITY_GROUP = """\
kind: CFSecurityGroup
metadata:
  name: dns
  namespace: cf
spec:
  rules:
    - protocol: udp
      ports: "53"
      destination: 10.0.0.0/8
  globallyEnabled:
    running: true
"""


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


class TestLoadManifestFile:
    """Tests for load_manifest_file."""

    def test_multi_document(self, tmp_path: Path) -> None:
        records = load_manifest_file(_write(tmp_path / "apps.yaml", APP_AND_TASK))

        assert [type(r) for r in records] == [CFApp, CFTask]
        app, task = records
        assert isinstance(app, CFApp)
        assert app.spec.current_droplet_ref.name == "build-1"
        assert isinstance(task, CFTask)
        assert task.spec.app_ref.name == "app-1"

    def test_empty_documents_skipped(self, tmp_path: Path) -> None:
        records = load_manifest_file(_write(tmp_path / "sg.yaml", "---\n" + SECURITY_GROUP + "---\n"))

        assert len(records) == 1
        sg = records[0]
        assert isinstance(sg, CFSecurityGroup)
        assert sg.spec.globally_enabled.running is True
        assert sg.spec.rules[0].ports == "53"

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest_file(_write(tmp_path / "bad.yaml", "kind: [unclosed"))

        assert "Invalid YAML" in str(exc_info.value)

    def test_document_not_a_mapping(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest_file(_write(tmp_path / "list.yaml", "- a\n- b\n"))

        assert "mapping" in str(exc_info.value)

    def test_missing_kind(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest_file(_write(tmp_path / "nokind.yaml", "metadata:\n  name: x\n"))

        assert "no kind" in str(exc_info.value)

    def test_unknown_kind(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest_file(
                _write(tmp_path / "deploy.yaml", "kind: Deployment\nmetadata:\n  name: x\n")
            )

        assert "Unknown kind" in str(exc_info.value)

    def test_api_version_mismatch(self, tmp_path: Path) -> None:
        content = "apiVersion: v1\nkind: CFApp\nmetadata:\n  name: x\n  namespace: y\n"

        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest_file(_write(tmp_path / "app.yaml", content))

        assert "does not match" in str(exc_info.value)

    def test_validation_errors_are_listed(self, tmp_path: Path) -> None:
        content = (
            "kind: CFApp\n"
            "metadata:\n  name: x\n  namespace: y\n"
            "spec:\n  desiredState: RUNNING\n"
        )

        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest_file(_write(tmp_path / "app.yaml", content))

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "spec.desiredState" in message

    def test_file_too_large(self, tmp_path: Path) -> None:
        path = tmp_path / "huge.yaml"
        path.write_bytes(b"#" * (MAX_MANIFEST_FILE_SIZE_BYTES + 1))

        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest_file(path)

        assert "maximum size" in str(exc_info.value)


class TestLoadManifests:
    def test_loads_yaml_files_in_name_order(self, tmp_path: Path) -> None:
        _write(tmp_path / "b.yml", SECURITY_GROUP)
        _write(tmp_path / "a.yaml", APP_AND_TASK)
        _write(tmp_path / "notes.txt", "kind: Nonsense")

        records = load_manifests(tmp_path)

        assert [r.KIND for r in records] == ["CFApp", "CFTask", "CFSecurityGroup"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError):
            load_manifests(tmp_path / "missing")


class TestSeedStore:
    @pytest.mark.asyncio
    async def test_creates_records_and_skips_existing(self) -> None:
        store = InMemoryStore()
        secret = Secret.from_plain("env", "cf-space-1", {"A": "1"})
        await store.create(secret)

        created = await seed_store(
            store,
            [secret, Secret.from_plain("other", "cf-space-1", {"B": "2"})],
        )

        assert created == 1
        assert store.record_count == 2
