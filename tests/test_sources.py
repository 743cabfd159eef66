#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Difference source and verification tests.
"""

import json
import os
import shutil
import tempfile
import unittest

from snapsync import (
    ByteRange,
    FileIOError,
    MemoryBlockDevice,
    RangeListSource,
    ThinDeltaSource,
    ValidationError,
    clip_ranges,
    range_digest,
    verify_replica,
)


THIN_DELTA_XML = """<superblock uuid="" time="3" transaction="5" data_block_size="128" nr_data_blocks="4096">
  <diff left="1" right="2">
    <same begin="0" length="2"/>
    <different begin="2" length="1"/>
    <right_only begin="3" length="2"/>
    <same begin="5" length="10"/>
    <left_only begin="15" length="1"/>
    <different begin="20" length="1"/>
  </diff>
</superblock>
"""


class TestRangeListSource(unittest.TestCase):
    def setUp(self) -> None:
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _write(self, name: str, content: str) -> str:
        path = os.path.join(self.test_dir, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def test_inclusive_pairs(self) -> None:
        source = RangeListSource.from_inclusive_pairs("/dev/null", [[0, 511], [1024, 1535]])
        self.assertEqual(list(source.ranges()), [ByteRange(0, 512), ByteRange(1024, 512)])

    def test_from_json(self) -> None:
        path = self._write("ranges.json", json.dumps([[0, 511], [1024, 1535]]))
        source = RangeListSource.from_json("/dev/null", path)
        self.assertEqual(list(source.ranges()), [ByteRange(0, 512), ByteRange(1024, 512)])
        self.assertEqual(source.origin, "/dev/null")

    def test_bad_json(self) -> None:
        path = self._write("ranges.json", "[[0, 1],")
        with self.assertRaises(ValidationError):
            RangeListSource.from_json("/dev/null", path)

    def test_json_must_be_array_of_pairs(self) -> None:
        with self.assertRaises(ValidationError):
            RangeListSource.from_json("/dev/null", self._write("a.json", '{"start": 0}'))
        with self.assertRaises(ValidationError):
            RangeListSource.from_json("/dev/null", self._write("b.json", "[[0, 1, 2]]"))
        with self.assertRaises(ValidationError):
            RangeListSource.from_json("/dev/null", self._write("c.json", "[5]"))
        with self.assertRaises(ValidationError):
            RangeListSource.from_json("/dev/null", self._write("d.json", '[["a", "b"]]'))
        with self.assertRaises(ValidationError):
            RangeListSource.from_json("/dev/null", self._write("e.json", "[[0.5, 10]]"))
        with self.assertRaises(ValidationError):
            RangeListSource.from_json("/dev/null", self._write("f.json", '["ab"]'))

    def test_missing_file(self) -> None:
        with self.assertRaises(FileIOError):
            RangeListSource.from_json("/dev/null", os.path.join(self.test_dir, "missing.json"))

    def test_origin_size(self) -> None:
        origin = os.path.join(self.test_dir, "origin.img")
        with open(origin, "wb") as f:
            f.write(b"\0" * 3000)
        self.assertEqual(RangeListSource(origin, []).origin_size, 3000)


class TestThinDeltaSource(unittest.TestCase):
    BLOCK = 128 * 512

    def setUp(self) -> None:
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _origin(self, size: int) -> str:
        path = os.path.join(self.test_dir, "origin.img")
        with open(path, "wb") as f:
            f.truncate(size)
        return path

    def test_changed_entries_become_ranges(self) -> None:
        block = self.BLOCK
        source = ThinDeltaSource(self._origin(32 * block), THIN_DELTA_XML)
        self.assertEqual(source.block_bytes, block)
        self.assertEqual(
            list(source.ranges()),
            [ByteRange(2 * block, 3 * block), ByteRange(20 * block, block)],
        )

    def test_last_block_clipped_to_origin_size(self) -> None:
        block = self.BLOCK
        source = ThinDeltaSource(self._origin(20 * block + 1000), THIN_DELTA_XML)
        self.assertEqual(
            list(source.ranges()),
            [ByteRange(2 * block, 3 * block), ByteRange(20 * block, 1000)],
        )

    def test_no_changes(self) -> None:
        xml = '<superblock data_block_size="128"><diff left="1" right="2"><same begin="0" length="9"/></diff></superblock>'
        self.assertEqual(list(ThinDeltaSource(self._origin(4096), xml).ranges()), [])

    def test_malformed_xml(self) -> None:
        with self.assertRaises(ValidationError):
            ThinDeltaSource("/dev/x", "<superblock")

    def test_missing_block_size(self) -> None:
        with self.assertRaises(ValidationError):
            ThinDeltaSource("/dev/x", "<superblock><diff/></superblock>")

    def test_non_integer_attributes(self) -> None:
        with self.assertRaises(ValidationError):
            ThinDeltaSource("/dev/x", '<superblock data_block_size="x"><diff/></superblock>')
        with self.assertRaises(ValidationError):
            ThinDeltaSource("/dev/x", '<superblock data_block_size="0"><diff/></superblock>')
        with self.assertRaises(ValidationError):
            ThinDeltaSource(
                "/dev/x",
                '<superblock data_block_size="128"><diff><different begin="two" length="1"/></diff></superblock>',
            )
        with self.assertRaises(ValidationError):
            ThinDeltaSource(
                "/dev/x",
                '<superblock data_block_size="128"><diff><right_only begin="2" length="1.5"/></diff></superblock>',
            )


class TestVerification(unittest.TestCase):
    def test_clip_ranges(self) -> None:
        ranges = [ByteRange(0, 10), ByteRange(90, 20), ByteRange(100, 5)]
        self.assertEqual(list(clip_ranges(ranges, 100)), [ByteRange(0, 10), ByteRange(90, 10)])

    def test_range_digest_only_reads_ranges(self) -> None:
        a = MemoryBlockDevice(b"A" * 10 + b"x" * 10 + b"B" * 10)
        b = MemoryBlockDevice(b"A" * 10 + b"y" * 10 + b"B" * 10)
        ranges = [ByteRange(0, 10), ByteRange(20, 10)]
        self.assertEqual(range_digest(a, ranges), range_digest(b, ranges))
        self.assertNotEqual(range_digest(a, [ByteRange(10, 10)]), range_digest(b, [ByteRange(10, 10)]))

    def test_verify_replica_files(self) -> None:
        test_dir = tempfile.mkdtemp()
        try:
            origin = os.path.join(test_dir, "origin.img")
            replica = os.path.join(test_dir, "replica.img")
            with open(origin, "wb") as f:
                f.write(b"0123456789" * 10)
            with open(replica, "wb") as f:
                f.write(b"0123456789" * 5)
            # The range past the replica's end is not compared.
            ranges = [ByteRange(0, 20), ByteRange(70, 10)]
            self.assertTrue(verify_replica(origin, replica, ranges))
            with open(replica, "r+b") as f:
                f.seek(5)
                f.write(b"!")
            self.assertFalse(verify_replica(origin, replica, ranges))
        finally:
            shutil.rmtree(test_dir, ignore_errors=True)


if __name__ == "__main__":
    unittest.main()
