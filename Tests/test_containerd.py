import io
import os
import shutil
import tempfile
import unittest
from datetime import datetime

from google.protobuf import duration_pb2

from boltkit.containerd import Category, ContainerdMetaDecoder
from boltkit.dump import dump_store
from boltkit.exceptions import DecodeError, WalkError
from boltkit.records import DecodedRecord
from boltkit.sink import LineSink
from boltkit.store import BoltStore

from bolt_fixture import FixtureBucket, any_value, go_time, uvarint, varint, write_db

SHA = "sha256:" + "0123456789abcdef" * 4
CREATED = datetime(2024, 5, 6, 7, 8, 9)
EXPIRES = datetime(2024, 5, 7, 7, 8, 9)
SPEC_URL = "types.containerd.io/opencontainers/runtime-spec/1/Spec"


def path(*names):
    return tuple(name.encode() for name in names)


class TestContainerdMetaDecoder(unittest.TestCase):
    """
    Unit tests for the containerd decode rules.
    """

    def setUp(self):
        self.decoder = ContainerdMetaDecoder()

    def test_schema_version(self):
        record = self.decoder.decode(path("v1"), b"version", varint(3))
        self.assertEqual(record, DecodedRecord("v1", "version", "3"))

    def test_image_fields(self):
        image = path("v1", "default", "images", "docker.io/library/redis:7")
        record = self.decoder.decode(image, b"createdat", go_time(CREATED, nanos=5))
        self.assertEqual(record.value, "2024-05-06T07:08:09.000000005Z")

        target = image + (b"target",)
        self.assertEqual(self.decoder.decode(target, b"digest", SHA.encode()).value, SHA)
        self.assertEqual(self.decoder.decode(target, b"size", varint(7023)).value, "7023")
        self.assertEqual(
            self.decoder.decode(target, b"mediatype", b"application/vnd.oci.image.index.v1+json").value,
            "application/vnd.oci.image.index.v1+json",
        )
        self.assertEqual(self.decoder.match(target, b"digest", False).category, Category.IMAGES)

    def test_container_structured_fields(self):
        container = path("v1", "k8s.io", "containers", "abc123")
        spec = self.decoder.decode(container, b"spec", any_value(SPEC_URL, b'{"ociVersion":"1.1.0"}'))
        self.assertEqual(spec.value, f'type_url={SPEC_URL} value={{"ociVersion":"1.1.0"}}')

        options = duration_pb2.Duration(seconds=1).SerializeToString()
        runtime = self.decoder.decode(container + (b"runtime",), b"options",
                                      any_value("containerd.runc.v1.Options", options))
        self.assertEqual(runtime.value, "type_url=containerd.runc.v1.Options value={1=1}")

        name = self.decoder.decode(container + (b"runtime",), b"name", b"io.containerd.runc.v2")
        self.assertEqual(name.value, "io.containerd.runc.v2")

    def test_content_blob_buckets_are_digests(self):
        blob = path("v1", "default", "content", "blob")
        self.assertEqual(self.decoder.decode(blob, SHA.encode(), None), DecodedRecord(
            "v1/default/content/blob", SHA, None))
        with self.assertRaises(DecodeError) as ctx:
            self.decoder.decode(blob, b"sha256:short", None)
        self.assertEqual(ctx.exception.path, "v1/default/content/blob")
        self.assertEqual(ctx.exception.key, "sha256:short")

        sized = self.decoder.decode(blob + (SHA.encode(),), b"size", varint(512))
        self.assertEqual(sized.value, "512")

    def test_lease_references(self):
        content = path("v1", "default", "leases", "gc-lease", "content")
        self.assertEqual(self.decoder.decode(content, SHA.encode(), b""),
                         DecodedRecord("v1/default/leases/gc-lease/content", SHA, ""))
        with self.assertRaises(DecodeError):
            self.decoder.decode(content, b"not-a-digest", b"")

    def test_snapshotter_metastore(self):
        snapshot = path("v1", "snapshots", "k8s.io/3/sha256:abc")
        self.assertEqual(self.decoder.decode(snapshot, b"id", uvarint(42)).value, "42")
        self.assertEqual(self.decoder.decode(snapshot, b"kind", b"\x02").value, "active")
        self.assertEqual(self.decoder.decode(snapshot, b"size", varint(4096)).value, "4096")
        self.assertEqual(self.decoder.decode(snapshot, b"inodes", varint(-1)).value, "-1")
        self.assertEqual(self.decoder.decode(snapshot, b"inodes", varint(64)).value, "64")
        parents = self.decoder.decode(path("v1", "parents"), uvarint(7) + uvarint(300), b"child")
        self.assertEqual((parents.key, parents.value), ("7/300", "child"))

    def test_integer_fields_render_as_text(self):
        record = self.decoder.decode(path("v1", "snapshots", "s1"), b"id", uvarint(9))
        self.assertIsInstance(record.value, str)
        self.assertIsInstance(self.decoder.decode(path("v1"), b"version", varint(3)).value, str)

    def test_singular_image_bucket_is_not_an_image(self):
        image = path("v1", "default", "image", "busybox")
        self.assertIsNone(self.decoder.match(image, b"createdat", False))
        self.assertEqual(self.decoder.decode(image, b"createdat", b"\x01").value, "0x01")

    def test_namespace_named_parents_keeps_bucket_names(self):
        record = self.decoder.decode(path("v1", "parents"), b"image", None)
        self.assertEqual(record, DecodedRecord("v1/parents", "image", None))

    def test_recognized_field_with_wrong_shape(self):
        with self.assertRaises(DecodeError) as ctx:
            self.decoder.decode(path("v1", "default", "containers", "c1"), b"createdat", b"yesterday")
        self.assertEqual(ctx.exception.path, "v1/default/containers/c1")
        self.assertEqual(ctx.exception.key, "createdat")

    def test_fallback_is_best_effort(self):
        labels = path("v1", "default", "images", "busybox", "labels")
        self.assertEqual(self.decoder.decode(labels, b"containerd.io/gc.ref", b"\xff\x00").value, "0xff00")
        self.assertEqual(self.decoder.decode(path("other"), b"key", b"text"),
                         DecodedRecord("other", "key", "text"))

    def test_sequence_keyed_buckets(self):
        key = (17).to_bytes(8, "big")
        self.assertEqual(self.decoder.decode(path("jobs"), key, b"x", sequence=17).key, "17")
        self.assertEqual(self.decoder.decode(path("jobs"), key, b"x", sequence=0).key, "0x" + key.hex())


class TestContainerdDump(unittest.TestCase):
    """
    End-to-end dumps of bolt files laid out like containerd's meta.db and a
    snapshotter's metadata.db.
    """

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "meta.db")

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def build(self, created=None):
        root = FixtureBucket()
        v1 = root.bucket("v1")
        v1.put("version", varint(3))
        ns = v1.bucket("default")
        ns.bucket("labels", inline=True).put("env", "test")

        container = ns.bucket("containers").bucket("abc123")
        container.put("createdat", go_time(CREATED))
        container.put("spec", any_value(SPEC_URL, b'{"ociVersion":"1.1.0"}'))
        runtime = container.bucket("runtime")
        runtime.put("name", "io.containerd.runc.v2")
        runtime.put("options", any_value("containerd.runc.v1.Options",
                                         duration_pb2.Duration(seconds=1).SerializeToString()))

        sandbox = ns.bucket("sandboxes").bucket("sb-1")
        sandbox.put("createdat", go_time(CREATED))
        sandbox.bucket("runtime").put("name", "io.containerd.runc.v2")

        content = ns.bucket("content")
        content.bucket("blob").bucket(SHA).put("size", varint(1638))
        ingest = content.bucket("ingests").bucket("upload-1")
        ingest.put("expected", SHA)
        ingest.put("expireat", go_time(EXPIRES))

        image = ns.bucket("images").bucket("docker.io/library/alpine:3.19")
        image.put("createdat", created if created is not None else go_time(CREATED))
        target = image.bucket("target")
        target.put("digest", SHA)
        target.put("mediatype", "application/vnd.oci.image.index.v1+json")
        target.put("size", varint(1638))

        lease = ns.bucket("leases").bucket("gc-lease")
        lease.put("createdat", go_time(CREATED))
        lease.bucket("content").put(SHA, b"")

        snapshot = ns.bucket("snapshots").bucket("overlayfs").bucket("k8s-key")
        snapshot.put("createdat", go_time(CREATED))
        snapshot.put("name", "default/1/k8s-key")
        write_db(self.db_path, root)

    def dump(self, db_path=None):
        out = io.StringIO()
        with BoltStore.open(db_path or self.db_path) as store:
            dump_store(store, ContainerdMetaDecoder(), LineSink(out))
        return out.getvalue()

    def test_dump_lines(self):
        self.build()
        created = "2024-05-06T07:08:09.000000000Z"
        container = "v1/default/containers/abc123"
        image = "v1/default/images/docker.io/library/alpine:3.19"
        self.assertEqual(self.dump().splitlines(), [
            ",v1",
            "v1,default",
            "v1/default,containers",
            "v1/default/containers,abc123",
            f"{container},createdat={created}",
            f"{container},runtime",
            f"{container}/runtime,name=io.containerd.runc.v2",
            f"{container}/runtime,options=type_url=containerd.runc.v1.Options value={{1=1}}",
            f'{container},spec=type_url={SPEC_URL} value={{"ociVersion":"1.1.0"}}',
            "v1/default,content",
            "v1/default/content,blob",
            f"v1/default/content/blob,{SHA}",
            f"v1/default/content/blob/{SHA},size=1638",
            "v1/default/content,ingests",
            "v1/default/content/ingests,upload-1",
            f"v1/default/content/ingests/upload-1,expected={SHA}",
            "v1/default/content/ingests/upload-1,expireat=2024-05-07T07:08:09.000000000Z",
            "v1/default,images",
            "v1/default/images,docker.io/library/alpine:3.19",
            f"{image},createdat={created}",
            f"{image},target",
            f"{image}/target,digest={SHA}",
            f"{image}/target,mediatype=application/vnd.oci.image.index.v1+json",
            f"{image}/target,size=1638",
            "v1/default,labels",
            "v1/default/labels,env=test",
            "v1/default,leases",
            "v1/default/leases,gc-lease",
            "v1/default/leases/gc-lease,content",
            f"v1/default/leases/gc-lease/content,{SHA}=",
            f"v1/default/leases/gc-lease,createdat={created}",
            "v1/default,sandboxes",
            "v1/default/sandboxes,sb-1",
            f"v1/default/sandboxes/sb-1,createdat={created}",
            "v1/default/sandboxes/sb-1,runtime",
            "v1/default/sandboxes/sb-1/runtime,name=io.containerd.runc.v2",
            "v1/default,snapshots",
            "v1/default/snapshots,overlayfs",
            "v1/default/snapshots/overlayfs,k8s-key",
            f"v1/default/snapshots/overlayfs/k8s-key,createdat={created}",
            "v1/default/snapshots/overlayfs/k8s-key,name=default/1/k8s-key",
            "v1,version=3",
        ])

    def test_snapshotter_metastore_lines(self):
        root = FixtureBucket()
        v1 = root.bucket("v1")
        v1.bucket("parents").put(uvarint(1) + uvarint(2), b"")
        base = v1.bucket("snapshots").bucket("default/1/base")
        base.put("createdat", go_time(CREATED))
        base.put("id", uvarint(1))
        base.put("inodes", varint(12))
        base.put("kind", b"\x03")
        base.put("size", varint(4096))
        db_path = write_db(os.path.join(self.temp_dir, "metadata.db"), root)

        self.assertEqual(self.dump(db_path).splitlines(), [
            ",v1",
            "v1,parents",
            "v1/parents,1/2=",
            "v1,snapshots",
            "v1/snapshots,default/1/base",
            "v1/snapshots/default/1/base,createdat=2024-05-06T07:08:09.000000000Z",
            "v1/snapshots/default/1/base,id=1",
            "v1/snapshots/default/1/base,inodes=12",
            "v1/snapshots/default/1/base,kind=committed",
            "v1/snapshots/default/1/base,size=4096",
        ])

    def test_decode_failure_stops_the_dump(self):
        self.build(created=b"\x01garbage")
        out = io.StringIO()
        with BoltStore.open(self.db_path) as store:
            with self.assertRaises(WalkError) as ctx:
                dump_store(store, ContainerdMetaDecoder(), LineSink(out))
        self.assertIsInstance(ctx.exception.__cause__, DecodeError)
        lines = out.getvalue().splitlines()
        self.assertIn("v1/default/content/ingests,upload-1", lines)
        self.assertEqual(lines[-1], "v1/default/images,docker.io/library/alpine:3.19")
        self.assertNotIn("v1/default,labels", lines)
        self.assertNotIn("v1,version=3", lines)


if __name__ == '__main__':
    unittest.main()
