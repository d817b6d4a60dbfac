import pytest

from osimage.mfs.bucket_map import (
    BucketMap, BucketMapError, END_OF_CHAIN, determine_bucket_size
)


@pytest.fixture
def bucket_map(disk):
    # 2048 sectors: a 4-sector map padded to one bucket, then 255 buckets
    bucket_map = BucketMap(disk, 0, 2048, 8)
    assert bucket_map.create()
    return bucket_map


def chain_length(bucket_map, bucket):
    return sum(length for _, length in bucket_map.iter_runs(bucket))


def test_layout_places_buckets_after_map(bucket_map):
    assert bucket_map.map_start_sector == 0
    assert bucket_map.map_sectors == 4
    assert bucket_map.data_start_sector == 8
    assert bucket_map.bucket_count == 255
    assert bucket_map.bucket_to_sector(0) == 8
    assert bucket_map.bucket_to_sector(3) == 32
    assert bucket_map.get_size_of_map() == 255 * 8


def test_fresh_map_is_one_free_run(bucket_map):
    assert bucket_map.next_free_bucket == 0
    assert bucket_map.get_bucket_length_and_link(0) == (255, END_OF_CHAIN)
    assert bucket_map.get_free_buckets() == 255


@pytest.mark.parametrize("count", [1, 7, 8, 64, 100])
def test_allocated_chain_sums_to_request(bucket_map, count):
    start, first_length = bucket_map.allocate_buckets(count)

    assert start == 0
    assert first_length == count
    assert chain_length(bucket_map, start) == count
    assert bucket_map.next_free_bucket == count
    assert bucket_map.get_free_buckets() == 255 - count


def test_consecutive_allocations_do_not_overlap(bucket_map):
    first, _ = bucket_map.allocate_buckets(8)
    second, _ = bucket_map.allocate_buckets(8)
    third, _ = bucket_map.allocate_buckets(1)

    assert (first, second, third) == (0, 8, 16)
    assert bucket_map.next_free_bucket == 17
    for bucket in (first, second):
        assert chain_length(bucket_map, bucket) == 8


def test_allocation_spanning_free_runs(bucket_map):
    # Free list of two runs: 0..3 and 10..254
    bucket_map._write_entry(0, 10, 4)
    bucket_map._write_entry(10, END_OF_CHAIN, 245)

    start, first_length = bucket_map.allocate_buckets(6)

    assert (start, first_length) == (0, 4)
    assert list(bucket_map.iter_runs(start)) == [(0, 4), (10, 2)]
    assert bucket_map.next_free_bucket == 12
    assert bucket_map.get_bucket_length_and_link(12) == (243, END_OF_CHAIN)


def test_exhaustion_fails_without_mutation(bucket_map):
    with pytest.raises(BucketMapError):
        bucket_map.allocate_buckets(256)

    assert bucket_map.next_free_bucket == 0
    assert bucket_map.get_free_buckets() == 255


def test_allocating_everything_then_one_more(bucket_map):
    start, _ = bucket_map.allocate_buckets(255)
    assert chain_length(bucket_map, start) == 255
    assert bucket_map.next_free_bucket == END_OF_CHAIN

    with pytest.raises(BucketMapError):
        bucket_map.allocate_buckets(1)


def test_non_positive_count_is_rejected(bucket_map):
    with pytest.raises(ValueError):
        bucket_map.allocate_buckets(0)


def test_set_next_bucket_keeps_length(bucket_map):
    first, _ = bucket_map.allocate_buckets(3)
    second, _ = bucket_map.allocate_buckets(2)
    bucket_map.set_next_bucket(first, second)

    assert bucket_map.get_bucket_length_and_link(first) == (3, second)
    assert chain_length(bucket_map, first) == 5


def test_bucket_out_of_range(bucket_map):
    with pytest.raises(BucketMapError):
        bucket_map.bucket_to_sector(255)


def test_open_rejects_wrong_map_location(disk, bucket_map):
    reopened = BucketMap(disk, 0, 2048, 8)
    reopened.open(0, 17)
    assert reopened.next_free_bucket == 17

    with pytest.raises(BucketMapError):
        BucketMap(disk, 0, 2048, 8).open(8, 0)


def test_region_too_small(disk):
    assert not BucketMap(disk, 0, 4, 8).create()


@pytest.mark.parametrize("size, expected", [
    (64 * 1024 * 1024, 8),
    (1024 * 1024 * 1024, 8),
    (2 * 1024 * 1024 * 1024, 16),
    (128 * 1024 * 1024 * 1024, 32),
    (512 * 1024 * 1024 * 1024, 64),
])
def test_determine_bucket_size(size, expected):
    assert determine_bucket_size(size) == expected
