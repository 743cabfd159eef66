#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Channel and transport selection tests.
"""

import io
import os
import shutil
import sys
import tempfile
import unittest

from snapsync import (
    FileChannel,
    ProcessChannel,
    SendConfig,
    SnapbackLog,
    StdioChannel,
    StreamChannel,
    TransportError,
    FileIOError,
    ValidationError,
    build_peer_command,
    open_apply_channel,
    open_send_channel,
    read_exact,
    split_remote,
)


class _TrickleStream(io.RawIOBase):
    """Returns at most one byte per read, like a slow pipe."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self._pos >= len(self._data):
            return b""
        self._pos += 1
        return self._data[self._pos - 1:self._pos]


class TestReadExact(unittest.TestCase):
    def test_short_reads_are_joined(self) -> None:
        channel = StreamChannel(_TrickleStream(b"abcdefgh"))
        self.assertEqual(read_exact(channel, 5), b"abcde")
        self.assertEqual(read_exact(channel, 5), b"fgh")
        self.assertEqual(read_exact(channel, 5), b"")

    def test_zero_size(self) -> None:
        self.assertEqual(read_exact(StreamChannel(io.BytesIO(b"abc")), 0), b"")


class TestSplitRemote(unittest.TestCase):
    def test_remote(self) -> None:
        self.assertEqual(split_remote("backup:/dev/vg1/data"), ("backup", "/dev/vg1/data"))
        self.assertEqual(split_remote("root@host:/dev/sdb"), ("root@host", "/dev/sdb"))

    def test_local(self) -> None:
        self.assertEqual(split_remote("/dev/vg1/data"), (None, "/dev/vg1/data"))
        self.assertEqual(split_remote("/dev/mapper/a:b"), (None, "/dev/mapper/a:b"))
        self.assertEqual(split_remote("C:\\images\\disk.img"), (None, "C:\\images\\disk.img"))


class TestPeerCommand(unittest.TestCase):
    def test_remote_peer(self) -> None:
        config = SendConfig(origin="/dev/vg0/data", destination="backup:/dev/vg1/my data",
                            rsh=("ssh", "-p", "2222"))
        self.assertEqual(
            build_peer_command(config),
            ["ssh", "-p", "2222", "backup", "snapsync", "apply", "-", "'/dev/vg1/my data'", "--quiet"],
        )

    def test_remote_peer_with_snapback(self) -> None:
        config = SendConfig(origin="/dev/vg0/data", destination="backup:/dev/vg1/data",
                            snapback="/var/tmp/undo", remote_command=("/opt/bin/snapsync",))
        argv = build_peer_command(config)
        self.assertEqual(argv[:3], ["ssh", "backup", "/opt/bin/snapsync"])
        self.assertEqual(argv[-2:], ["--snapback", "/var/tmp/undo"])

    def test_local_peer_runs_this_module(self) -> None:
        config = SendConfig(origin="/dev/vg0/data", destination="/dev/vg1/data")
        argv = build_peer_command(config)
        self.assertEqual(argv[0], sys.executable)
        self.assertTrue(argv[1].endswith("snapsync.py"))
        self.assertEqual(argv[2:], ["apply", "-", "/dev/vg1/data", "--quiet"])


class TestChannelSelection(unittest.TestCase):
    def setUp(self) -> None:
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_stdout_and_stdin(self) -> None:
        self.assertIsInstance(open_send_channel(SendConfig(origin="x", destination="-")), StdioChannel)
        self.assertIsInstance(open_apply_channel("-"), StdioChannel)

    def test_output_file(self) -> None:
        out = os.path.join(self.test_dir, "stream.bin")
        with open_send_channel(SendConfig(origin="x", destination="host:/dev/y", output=out)) as channel:
            self.assertIsInstance(channel, FileChannel)
            channel.write(b"data")
        with open(out, "rb") as f:
            self.assertEqual(f.read(), b"data")

    def test_apply_from_file(self) -> None:
        path = os.path.join(self.test_dir, "stream.bin")
        with open(path, "wb") as f:
            f.write(b"line\nrest")
        with open_apply_channel(path) as channel:
            self.assertEqual(channel.readline(), b"line\n")
            self.assertEqual(channel.read(10), b"rest")

    def test_snapback_requires_a_peer(self) -> None:
        out = os.path.join(self.test_dir, "stream.bin")
        for config in (
            SendConfig(origin="x", destination="-", snapback="/tmp/undo"),
            SendConfig(origin="x", destination="host:/dev/y", output=out, snapback="/tmp/undo"),
        ):
            with self.assertRaises(ValidationError):
                open_send_channel(config)
        self.assertFalse(os.path.exists(out))

    def test_missing_input_file(self) -> None:
        with self.assertRaises(FileIOError):
            open_apply_channel(os.path.join(self.test_dir, "missing"))


class TestProcessChannel(unittest.TestCase):
    def setUp(self) -> None:
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_write_to_peer(self) -> None:
        out = os.path.join(self.test_dir, "copy.bin")
        script = (
            "import sys\n"
            f"open({out!r}, 'wb').write(sys.stdin.buffer.read())\n"
        )
        with ProcessChannel([sys.executable, "-c", script]) as channel:
            channel.write(b"hello ")
            channel.write(b"peer")
        with open(out, "rb") as f:
            self.assertEqual(f.read(), b"hello peer")

    def test_read_from_peer(self) -> None:
        script = "import sys; sys.stdout.buffer.write(b'first\\nsecond')"
        with ProcessChannel([sys.executable, "-c", script], mode='rb') as channel:
            self.assertEqual(channel.readline(), b"first\n")
            self.assertEqual(read_exact(channel, 6), b"second")

    def test_failing_peer_raises_on_close(self) -> None:
        script = "import sys; sys.stdin.buffer.read(); sys.exit(3)"
        channel = ProcessChannel([sys.executable, "-c", script])
        channel.write(b"ignored")
        with self.assertRaises(TransportError):
            channel.close()

    def test_unknown_command(self) -> None:
        with self.assertRaises(TransportError):
            ProcessChannel([os.path.join(self.test_dir, "no-such-binary")])

    def test_failed_transfer_keeps_its_own_error(self) -> None:
        script = "import sys; sys.stdin.buffer.read(); sys.exit(3)"
        with self.assertRaises(FileIOError) as ctx:
            with ProcessChannel([sys.executable, "-c", script]) as channel:
                channel.write(b"partial")
                raise FileIOError("Short read from origin at 4096")
        self.assertIn("Short read", str(ctx.exception))


class _FailingFlushChannel(FileChannel):
    def flush(self) -> None:
        raise FileIOError("disk full")


class TestCloseOnFlushError(unittest.TestCase):
    def setUp(self) -> None:
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_file_channel_closes_when_flush_fails(self) -> None:
        channel = _FailingFlushChannel(os.path.join(self.test_dir, "out.bin"), 'wb')
        with self.assertRaises(FileIOError):
            channel.close()
        self.assertTrue(channel.stream.closed)

    def test_snapback_log_closes_when_flush_fails(self) -> None:
        channel = _FailingFlushChannel(os.path.join(self.test_dir, "undo.bin"), 'wb')
        log = SnapbackLog(channel)
        with self.assertRaises(FileIOError):
            log.close()
        self.assertTrue(channel.stream.closed)


if __name__ == "__main__":
    unittest.main()
