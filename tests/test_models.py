"""Tests for the typed descriptor and record models."""
import json

import pytest
from pydantic import ValidationError

from mclauncher.models import (AssetIndex, InstanceRecord, InstanceState, LibraryRef, LoaderType,
                               StrictVersionDescriptor, VersionDescriptor, derived_version_id)


class TestVersionDescriptor:
    def test_reads_upstream_keys_and_ignores_unknown(self):
        descriptor = VersionDescriptor.model_validate({
            "id": "1.20.1",
            "mainClass": "net.minecraft.client.main.Main",
            "assetIndex": {"id": "5", "url": "https://x/5.json", "sha1": "ab", "size": 3},
            "downloads": {"client": {"url": "https://x/client.jar", "sha1": "cd", "size": 9},
                          "server": {"url": "https://x/server.jar"}},
            "javaVersion": {"component": "java-runtime-gamma", "majorVersion": 17},
            "arguments": {"game": []},
        })
        assert descriptor.entry_point == "net.minecraft.client.main.Main"
        assert descriptor.asset_index_ref.id == "5"
        assert descriptor.client_download.size == 9
        assert descriptor.java_version.major_version == 17
        assert not descriptor.is_derived

    def test_derived_layer_may_omit_main_class_and_downloads(self):
        descriptor = VersionDescriptor.model_validate({"id": "fabric-loader-0.16.9-1.20.1", "inheritsFrom": "1.20.1"})
        assert descriptor.is_derived
        assert descriptor.entry_point is None
        assert descriptor.client_download is None

    def test_to_json_keeps_inherits_from(self):
        descriptor = VersionDescriptor(id="quilt-loader-0.26.0-1.20.1", inherits_from="1.20.1")
        data = json.loads(descriptor.to_json())
        assert data["inheritsFrom"] == "1.20.1"
        assert "mainClass" not in data

    def test_strict_requires_client_download(self):
        with pytest.raises(ValidationError):
            StrictVersionDescriptor.model_validate({
                "id": "x", "mainClass": "Main",
                "assetIndex": {"id": "5", "url": "https://x/5.json"},
                "libraries": [],
            })

    def test_strict_requires_library_downloads(self):
        with pytest.raises(ValidationError):
            StrictVersionDescriptor.model_validate({
                "id": "x", "mainClass": "Main",
                "downloads": {"client": {"url": "https://x/client.jar"}},
                "assetIndex": {"id": "5", "url": "https://x/5.json"},
                "libraries": [{"name": "net.fabricmc:fabric-loader:0.16.9", "url": "https://maven.fabricmc.net/"}],
            })


class TestNatives:
    def _lib(self, natives=None):
        classifier = {"path": "n.jar", "url": "https://x/n.jar"}
        return LibraryRef.model_validate({
            "name": "org.lwjgl:lwjgl:3.3.1",
            "natives": natives or {},
            "downloads": {"classifiers": {"natives-windows-64": classifier, "natives-linux": classifier}},
        })

    def test_natives_mapping_with_arch(self):
        lib = self._lib({"windows": "natives-windows-${arch}"})
        key, _ = lib.native_for("windows", "x64")
        assert key == "natives-windows-64"

    def test_standard_classifier_key(self):
        key, _ = self._lib().native_for("linux", "x64")
        assert key == "natives-linux"

    def test_no_native_for_platform(self):
        assert self._lib().native_for("osx", "arm64") is None


class TestAssetIndex:
    def test_unique_objects_deduplicates_hashes(self):
        index = AssetIndex.model_validate({"objects": {
            "a": {"hash": "aa11", "size": 1},
            "b": {"hash": "aa11", "size": 1},
            "c": {"hash": "bb22", "size": 2},
        }})
        objects = index.unique_objects()
        assert [obj.hash for obj in objects] == ["aa11", "bb22"]
        assert objects[0].shard == "aa"


class TestInstanceRecord:
    def test_unknown_keys_round_trip(self):
        record = InstanceRecord.model_validate({"id": "i", "version": "1.20.1", "state": "ready", "icon": "grass"})
        data = json.loads(record.model_dump_json())
        assert data["icon"] == "grass"
        assert data["state"] == "ready"
        assert record.state == InstanceState.READY

    def test_version_id_with_loader(self):
        record = InstanceRecord(id="i", version="1.20.1", loader="fabric", loader_version="0.16.9")
        assert record.version_id() == "fabric-loader-0.16.9-1.20.1"

    def test_version_id_without_loader(self):
        assert InstanceRecord(id="i", version="1.20.1").version_id() == "1.20.1"


class TestDerivedId:
    def test_deterministic(self):
        assert derived_version_id(LoaderType.QUILT, "0.26.0", "1.20.1") == "quilt-loader-0.26.0-1.20.1"
        assert derived_version_id("fabric", "0.16.9", "1.21") == "fabric-loader-0.16.9-1.21"
