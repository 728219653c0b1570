import io
import os
import struct
import threading
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

try:
    from enctools import container
    from enctools.container import ContainerCodec, ContainerHeader, is_container, read_header, read_header_file
    from enctools.errors import AuthenticationFailure, Cancelled, FormatError, InvalidFormat, UnsupportedAlgorithm
    from enctools.kdf import KeyDerivationCache
    from enctools.pipelines import GCM_FRAME_SIZE, Algorithm, pipeline_for
    from enctools.pool import ResourcePool
except ModuleNotFoundError as exc:  # pragma: no cover - dependency missing
    container = None
    _IMPORT_ERROR = exc
else:
    _IMPORT_ERROR = None


ITERATIONS = 1000
CHUNK = 64


@unittest.skipIf(container is None, f"dependency unavailable: {_IMPORT_ERROR}")
class ContainerCodecTests(unittest.TestCase):
    """Header layout, version branches and the file-level wrappers."""

    def setUp(self) -> None:
        self.tmpdir = TemporaryDirectory()
        self.tmp_path = Path(self.tmpdir.name)
        self.resources = ResourcePool(engine_capacity=2, buffer_capacity=2)
        self.codec = ContainerCodec(key_cache=KeyDerivationCache(), resources=self.resources, chunk_size=CHUNK)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _seal(self, data: bytes, algorithm=Algorithm.AES_GCM, password="pw", **kwargs) -> bytes:
        out = io.BytesIO()
        self.codec.encrypt_stream(io.BytesIO(data), out, algorithm, password, ITERATIONS, **kwargs)
        return out.getvalue()

    def _open(self, blob: bytes, password="pw"):
        out = io.BytesIO()
        result = self.codec.decrypt(io.BytesIO(blob), out, password)
        return out.getvalue(), result

    def test_roundtrip_every_algorithm(self):
        data = os.urandom(CHUNK * 2 + 9)
        for algorithm in Algorithm:
            with self.subTest(algorithm=algorithm.label):
                plain, result = self._open(self._seal(data, algorithm, original_filename="report.pdf"))
                self.assertEqual(plain, data)
                self.assertEqual(result.original_filename, "report.pdf")
                self.assertIs(result.header.algorithm, algorithm)

    def test_header_layout(self):
        blob = self._seal(b"hello", Algorithm.AES_GCM, original_filename="naïve.txt")
        self.assertEqual(blob[:4], b"ENC3")
        self.assertEqual(blob[4], 1)
        iterations, salt_len = struct.unpack_from("<ii", blob, 5)
        self.assertEqual(iterations, ITERATIONS)
        self.assertEqual(salt_len, 16)
        (key_bits,) = struct.unpack_from("<i", blob, 13 + salt_len)
        self.assertEqual(key_bits, 256)
        (name_len,) = struct.unpack_from("<i", blob, 17 + salt_len)
        name = "naïve.txt".encode("utf-8")
        self.assertEqual(name_len, len(name))
        self.assertEqual(blob[21 + salt_len:21 + salt_len + name_len], name)

    def test_salt_is_fresh_per_container(self):
        first = read_header(io.BytesIO(self._seal(b"same")))
        second = read_header(io.BytesIO(self._seal(b"same")))
        self.assertNotEqual(first.salt, second.salt)

    def test_non_aes_records_zero_key_size(self):
        header = read_header(io.BytesIO(self._seal(b"xor me", Algorithm.XOR, aes_key_size_bits=128)))
        self.assertEqual(header.key_size_bits, 0)

    def test_aes_128_recorded_and_used(self):
        blob = self._seal(b"short key", Algorithm.AES_CBC, aes_key_size_bits=128)
        header = read_header(io.BytesIO(blob))
        self.assertEqual(header.key_size_bits, 128)
        self.assertEqual(self._open(blob)[0], b"short key")

    def _legacy_blob(self, version: int, key_size_bits: int, data: bytes, algorithm=Algorithm.AES_GCM) -> bytes:
        salt = os.urandom(16)
        header = ContainerHeader(
            algorithm=algorithm,
            iterations=ITERATIONS,
            salt=salt,
            key_size_bits=key_size_bits,
            version=version
        )
        out = io.BytesIO()
        out.write(header.pack())
        pipeline = pipeline_for(algorithm, key_cache=KeyDerivationCache(), resources=self.resources, chunk_size=CHUNK)
        pipeline.encrypt(io.BytesIO(data), out, "pw", salt, ITERATIONS, 256)
        return out.getvalue()

    def test_version_one_defaults_to_256_bits(self):
        blob = self._legacy_blob(1, 256, b"version one")
        self.assertEqual(blob[:4], b"ENC1")
        plain, result = self._open(blob)
        self.assertEqual(plain, b"version one")
        self.assertIsNone(result.original_filename)
        self.assertEqual(result.header.key_size_bits, 256)
        self.assertEqual(result.header.version, 1)

    def test_version_two_zero_key_size_falls_back(self):
        blob = self._legacy_blob(2, 0, b"version two", Algorithm.AES_CBC)
        self.assertEqual(blob[:4], b"ENC2")
        plain, result = self._open(blob)
        self.assertEqual(plain, b"version two")
        self.assertEqual(result.header.key_size_bits, 256)
        self.assertIsNone(result.original_filename)

    def test_empty_filename_reads_back_as_none(self):
        plain, result = self._open(self._seal(b"anon"))
        self.assertEqual(plain, b"anon")
        self.assertIsNone(result.original_filename)

    def test_bad_magic(self):
        for blob in (b"", b"EN", b"XYZ3" + b"\x00" * 40, b"enc3" + b"\x00" * 40):
            with self.subTest(blob=blob[:4]):
                with self.assertRaises(FormatError):
                    read_header(io.BytesIO(blob))

    def test_unknown_version(self):
        with self.assertRaises(FormatError):
            read_header(io.BytesIO(b"ENC9" + b"\x00" * 40))

    def test_truncated_after_algorithm_byte(self):
        with self.assertRaises(FormatError):
            read_header(io.BytesIO(b"ENC3\x00"))

    def test_unknown_algorithm_id(self):
        blob = b"ENC3" + struct.pack("<Bii", 9, ITERATIONS, 0) + struct.pack("<ii", 0, 0)
        with self.assertRaises(UnsupportedAlgorithm):
            read_header(io.BytesIO(blob))

    def test_implausible_lengths(self):
        for salt_len in (-1, 1 << 20):
            with self.subTest(salt_len=salt_len):
                blob = b"ENC3" + struct.pack("<Bii", 1, ITERATIONS, salt_len)
                with self.assertRaises(FormatError):
                    read_header(io.BytesIO(blob))
        for name_len in (-4, 4096, 1 << 30):
            with self.subTest(name_len=name_len):
                blob = b"ENC3" + struct.pack("<Bii", 1, ITERATIONS, 0) + struct.pack("<ii", 256, name_len)
                with self.assertRaises(FormatError):
                    read_header(io.BytesIO(blob))

    def test_zero_iterations_rejected_on_read(self):
        blob = b"ENC3" + struct.pack("<Bii", 1, 0, 0) + struct.pack("<ii", 256, 0)
        with self.assertRaises(FormatError):
            read_header(io.BytesIO(blob))

    def test_build_header_validation(self):
        with self.assertRaises(ValueError):
            ContainerCodec.build_header(Algorithm.AES_CBC, 0)
        with self.assertRaises(ValueError):
            ContainerCodec.build_header(Algorithm.AES_GCM, ITERATIONS, 512)
        with self.assertRaises(ValueError):
            ContainerCodec.build_header(Algorithm.XOR, ITERATIONS, original_filename="n" * 5000)
        header = ContainerCodec.build_header("3des", ITERATIONS, 512)
        self.assertEqual(header.key_size_bits, 0)

    def test_iterations_beyond_int32_rejected(self):
        for iterations in (2 ** 31, 2 ** 40):
            with self.subTest(iterations=iterations):
                out = io.BytesIO()
                with self.assertRaises(ValueError):
                    self.codec.encrypt_stream(io.BytesIO(b"data"), out, "xor", "pw", iterations)
                self.assertEqual(out.getvalue(), b"")
        header = ContainerCodec.build_header(Algorithm.XOR, 2 ** 31 - 1)
        self.assertEqual(struct.unpack_from("<i", header.pack(), 5)[0], 2 ** 31 - 1)

    def test_iterations_beyond_int32_leave_no_output_file(self):
        source = self.tmp_path / "in.bin"
        source.write_bytes(b"payload")
        target = self.tmp_path / "in.bin.xor"
        with self.assertRaises(ValueError):
            self.codec.encrypt_file(source, target, Algorithm.XOR, "pw", 2 ** 31)
        self.assertFalse(target.exists())

    def test_pack_rejects_fields_outside_header_range(self):
        cases = {
            "iterations": dict(iterations=2 ** 31, salt=b"s" * 16),
            "salt": dict(iterations=ITERATIONS, salt=b"s" * 1025),
            "key_bits": dict(iterations=ITERATIONS, salt=b"s" * 16, key_size_bits=2 ** 31),
        }
        for field, kwargs in cases.items():
            with self.subTest(field=field):
                with self.assertRaises(ValueError):
                    ContainerHeader(algorithm=Algorithm.AES_CBC, **kwargs).pack()

    def test_build_header_rejects_oversize_salt(self):
        with self.assertRaises(ValueError):
            ContainerCodec.build_header(Algorithm.AES_GCM, ITERATIONS, salt=b"s" * 2048)
        header = ContainerCodec.build_header(Algorithm.AES_GCM, ITERATIONS, salt=b"s" * 1024)
        self.assertEqual(read_header(io.BytesIO(header.pack())).salt, b"s" * 1024)

    def test_implausible_aes_key_size_on_read(self):
        for version in (2, 3):
            for key_bits in (512, -8, 64, 1):
                with self.subTest(version=version, key_bits=key_bits):
                    blob = b"ENC" + str(version).encode() + struct.pack("<Bii", 0, ITERATIONS, 0)
                    blob += struct.pack("<i", key_bits)
                    if version == 3:
                        blob += struct.pack("<i", 0)
                    with self.assertRaises(FormatError):
                        read_header(io.BytesIO(blob))

    def test_non_aes_key_size_field_is_ignored_on_read(self):
        blob = b"ENC3" + struct.pack("<Bii", 3, ITERATIONS, 0) + struct.pack("<ii", 512, 0)
        self.assertIs(read_header(io.BytesIO(blob)).algorithm, Algorithm.XOR)

    def test_gcm_opens_with_a_different_chunk_size(self):
        data = os.urandom(CHUNK * 3 + 5)
        sealed = io.BytesIO()
        ContainerCodec(key_cache=KeyDerivationCache(), resources=self.resources, chunk_size=CHUNK).encrypt_stream(
            io.BytesIO(data), sealed, Algorithm.AES_GCM, "pw", ITERATIONS
        )
        for chunk_size in (CHUNK * 2, 7):
            with self.subTest(chunk_size=chunk_size):
                opener = ContainerCodec(key_cache=KeyDerivationCache(), resources=self.resources, chunk_size=chunk_size)
                out = io.BytesIO()
                opener.decrypt(io.BytesIO(sealed.getvalue()), out, "pw")
                self.assertEqual(out.getvalue(), data)

    def test_wrong_password_on_gcm(self):
        blob = self._seal(b"top secret" * 30, Algorithm.AES_GCM)
        with self.assertRaises(AuthenticationFailure):
            self._open(blob, password="guess")
        self.assertEqual(self.resources.outstanding(), 0)

    def test_cancelled_before_start_writes_nothing(self):
        event = threading.Event()
        event.set()
        out = io.BytesIO()
        with self.assertRaises(Cancelled):
            self.codec.encrypt_stream(io.BytesIO(b"data"), out, Algorithm.AES_CBC, "pw", ITERATIONS, cancel_event=event)
        self.assertEqual(out.getvalue(), b"")

    def test_file_roundtrip_records_basename(self):
        source = self.tmp_path / "notes.txt"
        source.write_bytes(b"line\n" * 50)
        target = self.tmp_path / "notes.txt.aesgcm"
        restored = self.tmp_path / "restored.txt"
        seen = []
        written = self.codec.encrypt_file(source, target, Algorithm.AES_GCM, "pw", ITERATIONS, progress=seen.append)
        self.assertEqual(written, 250)
        self.assertEqual(seen[-1], 250)
        self.assertTrue(is_container(target))
        self.assertFalse(is_container(source))
        self.assertFalse(is_container(self.tmp_path / "missing.bin"))
        self.assertEqual(read_header_file(target).original_filename, "notes.txt")
        result = self.codec.decrypt_file(target, restored, "pw")
        self.assertEqual(result.original_filename, "notes.txt")
        self.assertEqual(restored.read_bytes(), source.read_bytes())

    def test_encrypt_to_stream_from_path(self):
        source = self.tmp_path / "blob.bin"
        source.write_bytes(os.urandom(300))
        out = io.BytesIO()
        self.codec.encrypt(source, out, Algorithm.TRIPLE_DES, "pw", ITERATIONS)
        out.seek(0)
        restored = io.BytesIO()
        result = self.codec.decrypt(out, restored, "pw")
        self.assertEqual(restored.getvalue(), source.read_bytes())
        self.assertEqual(result.original_filename, "blob.bin")

    def test_decrypt_file_rejects_bad_magic_before_creating_output(self):
        source = self.tmp_path / "plain.txt"
        source.write_bytes(b"not a container")
        target = self.tmp_path / "out.txt"
        with self.assertRaises(FormatError):
            self.codec.decrypt_file(source, target, "pw")
        self.assertFalse(target.exists())

    def test_storage_error_warns_about_partial_output(self):
        source = self.tmp_path / "in.bin"
        source.write_bytes(b"payload")
        target = self.tmp_path / "in.bin.aes"
        with mock.patch.object(ContainerCodec, "_encrypt_payload", side_effect=OSError("disk full")):
            with self.assertWarns(RuntimeWarning):
                with self.assertRaises(OSError):
                    self.codec.encrypt_file(source, target, Algorithm.AES_CBC, "pw", ITERATIONS)
        self.assertTrue(target.exists())

    def test_module_level_helpers(self):
        source = self.tmp_path / "doc.txt"
        source.write_bytes(b"module helpers")
        target = self.tmp_path / "doc.txt.xor"
        restored = self.tmp_path / "doc.out"
        progress = []
        container.encrypt_file(source, target, "xor", "pw", ITERATIONS, on_progress=progress.append)
        result = container.decrypt_file(target, restored, "pw")
        self.assertEqual(restored.read_bytes(), b"module helpers")
        self.assertEqual(result.original_filename, "doc.txt")
        self.assertEqual(progress, [len(b"module helpers")])



@unittest.skipIf(container is None, f"dependency unavailable: {_IMPORT_ERROR}")
class ProductionScaleTests(unittest.TestCase):
    """Multi-megabyte files at the default chunk size and KDF cost."""

    def setUp(self) -> None:
        self.tmpdir = TemporaryDirectory()
        self.tmp_path = Path(self.tmpdir.name)
        self.resources = ResourcePool(engine_capacity=2, buffer_capacity=2)
        self.codec = ContainerCodec(key_cache=KeyDerivationCache(), resources=self.resources)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_ten_megabyte_aes_cbc_file(self):
        source = self.tmp_path / "big.bin"
        data = os.urandom(10 * 1024 * 1024)
        source.write_bytes(data)
        target = self.tmp_path / "big.bin.aes"
        restored = self.tmp_path / "big.out"
        seen = []
        written = self.codec.encrypt_file(source, target, Algorithm.AES_CBC, "p@ss", 200_000, progress=seen.append)
        self.assertEqual(written, len(data))
        self.assertEqual(seen[-1], len(data))
        blob = target.read_bytes()
        self.assertEqual(blob[:4], b"ENC3")
        self.assertEqual(blob[4], 0)
        self.assertEqual(read_header_file(target).iterations, 200_000)

        result = self.codec.decrypt_file(target, restored, "p@ss")
        self.assertEqual(result.original_filename, "big.bin")
        self.assertEqual(restored.read_bytes(), data)

        damaged = self.tmp_path / "damaged.aes"
        damaged.write_bytes(b"X" + blob[1:])
        with self.assertRaises(InvalidFormat):
            self.codec.decrypt_file(damaged, self.tmp_path / "damaged.out", "p@ss")
        self.assertEqual(self.resources.outstanding(), 0)

    def test_gcm_spans_two_frames(self):
        data = os.urandom(GCM_FRAME_SIZE + 10)
        sealed = io.BytesIO()
        self.codec.encrypt_stream(io.BytesIO(data), sealed, Algorithm.AES_GCM, "pw", ITERATIONS)
        blob = sealed.getvalue()
        header_len = len(ContainerHeader(Algorithm.AES_GCM, ITERATIONS, b"s" * 16).pack())
        self.assertEqual(len(blob), header_len + 12 + len(data) + 2 * 16)

        out = io.BytesIO()
        self.codec.decrypt(io.BytesIO(blob), out, "pw")
        self.assertEqual(out.getvalue(), data)

        tampered = bytearray(blob)
        tampered[-5] ^= 0x01
        with self.assertRaises(AuthenticationFailure):
            self.codec.decrypt(io.BytesIO(bytes(tampered)), io.BytesIO(), "pw")
        self.assertEqual(self.resources.outstanding(), 0)


if __name__ == "__main__":
    unittest.main()
