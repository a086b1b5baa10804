import json
import threading

import pytest

from gain_bridge.errors import DecodeError
from gain_bridge.gains import GainCache, GainVector, to_float32
from gain_bridge.topics import AxisGroup, GainTerm

SCENARIO = b'{"kp":[1.5,0,0],"ki":[0,0,0],"kd":[0,0,0]}'


def test_decode_full_broadcast():
    gains = GainVector.decode(SCENARIO)
    assert gains == GainVector(kp=(1.5, 0.0, 0.0), ki=(0.0, 0.0, 0.0), kd=(0.0, 0.0, 0.0))
    assert gains.term(GainTerm.PROPORTIONAL) == (1.5, 0.0, 0.0)


def test_decode_rounds_to_float32():
    gains = GainVector.decode(b'{"kp":[0.1,0,0],"ki":[0,0,0],"kd":[0,0,0]}')
    assert gains.kp[0] == to_float32(0.1)
    assert gains.kp[0] != 0.1


def test_decode_ignores_extra_keys():
    payload = {"kp": [1, 2, 3], "ki": [4, 5, 6], "kd": [7, 8, 9], "seq": 12}
    gains = GainVector.decode(json.dumps(payload).encode())
    assert gains.flatten() == [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0]


@pytest.mark.parametrize(
    "payload, fragment",
    [
        (b'{"kp":[1,0,0],"ki":[0,0,0]}', "'kd'"),
        (b'{"kp":[1,0],"ki":[0,0,0],"kd":[0,0,0]}', "exactly 3"),
        (b'{"kp":[1,0,0,0],"ki":[0,0,0],"kd":[0,0,0]}', "exactly 3"),
        (b'{"kp":"fast","ki":[0,0,0],"kd":[0,0,0]}', "array"),
        (b'{"kp":[true,0,0],"ki":[0,0,0],"kd":[0,0,0]}', "kp[0]"),
        (b'{"kp":[1,"0",0],"ki":[0,0,0],"kd":[0,0,0]}', "kp[1]"),
        (b'{"kp":[NaN,0,0],"ki":[0,0,0],"kd":[0,0,0]}', "finite"),
        (b'{"kp":[1e39,0,0],"ki":[0,0,0],"kd":[0,0,0]}', "32-bit"),
        (b'{"kp":[1' + b"0" * 400 + b',0,0],"ki":[0,0,0],"kd":[0,0,0]}', "32-bit"),
        (b"[" * 200000, "nested too deeply"),
        (b"[1, 2, 3]", "JSON object"),
        (b"not json", "valid JSON"),
        (b"\xff\xfe", "valid JSON"),
    ],
)
def test_decode_rejects_bad_shapes(payload, fragment):
    with pytest.raises(DecodeError) as excinfo:
        GainVector.decode(payload)
    assert fragment in str(excinfo.value)


def test_encode_round_trips_through_decode():
    gains = GainVector(kp=(1.0, 2.0, 3.0), ki=(0.5, 0.25, 0.125), kd=(0.0, -1.0, 8.0))
    assert GainVector.decode(gains.encode()) == gains


def test_cache_starts_at_zero():
    cache = GainCache()
    assert cache.snapshot() == {
        AxisGroup.POSITION: GainVector.zero(),
        AxisGroup.ATTITUDE: GainVector.zero(),
    }


def test_cache_update_replaces_only_its_slot():
    cache = GainCache()
    gains = GainVector.decode(SCENARIO)
    cache.update(AxisGroup.POSITION, gains)
    assert cache.get(AxisGroup.POSITION) == gains
    assert cache.get(AxisGroup.ATTITUDE) == GainVector.zero()


def test_cache_refuses_partial_updates():
    cache = GainCache()
    with pytest.raises(TypeError):
        cache.update(AxisGroup.POSITION, {"kp": [1, 0, 0]})


def test_concurrent_writers_never_cross_slots():
    cache = GainCache()
    rounds = 200
    pos_vectors = {GainVector(kp=(float(i), 0.0, 0.0)) for i in range(rounds)}
    att_vectors = {GainVector(kd=(0.0, 0.0, float(-i - 1))) for i in range(rounds)}
    seen = {AxisGroup.POSITION: set(), AxisGroup.ATTITUDE: set()}
    stop = threading.Event()

    def writer(group, vectors):
        for vec in sorted(vectors, key=lambda v: v.flatten()):
            cache.update(group, vec)

    def reader():
        while not stop.is_set():
            for group, vec in cache.snapshot().items():
                seen[group].add(vec)

    threads = [
        threading.Thread(target=writer, args=(AxisGroup.POSITION, pos_vectors)),
        threading.Thread(target=writer, args=(AxisGroup.ATTITUDE, att_vectors)),
    ]
    watcher = threading.Thread(target=reader)
    watcher.start()
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    stop.set()
    watcher.join()

    assert seen[AxisGroup.POSITION] <= pos_vectors | {GainVector.zero()}
    assert seen[AxisGroup.ATTITUDE] <= att_vectors | {GainVector.zero()}
    assert cache.get(AxisGroup.POSITION) in pos_vectors
    assert cache.get(AxisGroup.ATTITUDE) in att_vectors
