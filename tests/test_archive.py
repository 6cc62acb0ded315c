"""Tests for BagArchive: open, add, extract, remove and save of .bag/.idx archives."""

import struct

import numpy as np
import pandas as pd
import pytest

from bagfile.archive import BagArchive
from bagfile.audio.container import AudioContainer
from bagfile.definitions import Encoding
from bagfile.errors import DuplicateNameError, FormatError, StateError
from bagfile.index import IndexRecord, IndexTable


def _add_wav(archive, path, overwrite=True):
    return archive.add_file(AudioContainer(path).load_header(), overwrite=overwrite)


def _assert_offsets_cumulative(index):
    position = 0
    for record in index:
        assert record.data_offset == position, record.name
        position += record.data_size


@pytest.fixture
def three_sounds(make_pcm_wav, make_adpcm_wav):
    return [
        make_pcm_wav('alpha.wav', b'\x01\x00' * 100),
        make_pcm_wav('bravo.wav', b'\x80\x81' * 33, channels=2, bits_per_sample=8),
        make_adpcm_wav('charlie.wav', bytes(range(256)) * 2, block_size=256),
    ]


@pytest.fixture
def saved_archive(bag_paths, three_sounds):
    """A v2 archive with three records already on disk."""
    bag, idx = bag_paths
    with BagArchive(bag) as archive:
        for path in three_sounds:
            _add_wav(archive, path)
        archive.save()
    return bag, idx


def test_end_to_end_pcm_voice(bag_paths, make_pcm_wav, voice_samples):
    bag, idx = bag_paths
    source = make_pcm_wav('voice.wav', voice_samples.tobytes())

    with BagArchive(bag) as archive:
        assert len(archive) == 0
        _add_wav(archive, source)
        assert archive.save() is True

    with BagArchive(bag, bag, idx) as archive:
        container = archive.get_file('voice')

        assert container.channels == 1
        assert container.bits_per_sample == 16
        assert container.encoding is Encoding.PCM
        assert container.get_samples() == voice_samples.tobytes()
        assert len(container.get_samples()) == 2000


def test_save_writes_payloads_in_index_order(saved_archive, three_sounds):
    bag, idx = saved_archive
    index = IndexTable.load(idx)
    payload = bag.read_bytes()

    assert index.names() == ['alpha', 'bravo', 'charlie']
    assert [r.format_code for r in index] == [6, 3, 12]
    assert index['charlie'].block_size == 256
    _assert_offsets_cumulative(index)
    assert len(payload) == sum(r.data_size for r in index)
    assert payload[:200] == b'\x01\x00' * 100


def test_offsets_recomputed_after_mixed_edits(saved_archive, make_pcm_wav):
    bag, idx = saved_archive
    delta = make_pcm_wav('delta.wav', b'\x07\x00' * 64)
    bravo = make_pcm_wav('bravo.wav', b'\x02\x00' * 10, sample_rate=8000)

    with BagArchive(bag, bag, idx) as archive:
        charlie_before = archive.get_file('charlie').get_samples()
        assert archive.remove_file('alpha') is True
        _add_wav(archive, delta)
        _add_wav(archive, bravo)
        archive.save()

        assert archive.names() == ['charlie', 'delta', 'bravo']
        _assert_offsets_cumulative(archive.index)
        # reads after save come from the rewritten data file
        assert archive.get_file('charlie').get_samples() == charlie_before

    index = IndexTable.load(idx)
    data = bag.read_bytes()
    _assert_offsets_cumulative(index)
    delta_record = index['delta']
    assert data[delta_record.data_offset:delta_record.data_offset + delta_record.data_size] == b'\x07\x00' * 64
    assert index['bravo'].sample_rate == 8000


def test_overwrite_replaces_record(bag_paths, make_pcm_wav, tmp_path):
    bag, _ = bag_paths
    first = make_pcm_wav('shot.wav', b'\x00\x00' * 10)
    second = make_pcm_wav('shot.wav', b'\x01' * 30, channels=2, sample_rate=11025,
                          bits_per_sample=8, directory=tmp_path / 'v2')

    with BagArchive(bag) as archive:
        _add_wav(archive, first)
        _add_wav(archive, second)

        assert archive.names() == ['shot']
        record = archive.index['shot']
        assert (record.data_size, record.sample_rate, record.format_code) == (30, 11025, 3)
        assert archive.get_file('shot').get_samples() == b'\x01' * 30


def test_duplicate_without_overwrite(bag_paths, make_pcm_wav):
    bag, _ = bag_paths
    path = make_pcm_wav('dup.wav', b'\x00\x00')

    with BagArchive(bag) as archive:
        _add_wav(archive, path)
        with pytest.raises(DuplicateNameError):
            _add_wav(archive, path, overwrite=False)
        assert archive.names() == ['dup']


def test_remove_absent_name(saved_archive):
    bag, idx = saved_archive

    with BagArchive(bag, bag, idx) as archive:
        assert archive.remove_file('zulu') is False
        assert archive.names() == ['alpha', 'bravo', 'charlie']
        assert not archive.is_modified
        assert archive.save() is False


def test_remove_pending_file(bag_paths, make_pcm_wav):
    bag, _ = bag_paths

    with BagArchive(bag) as archive:
        _add_wav(archive, make_pcm_wav('gone.wav', b'\x00\x00'))
        assert archive.remove_file('gone.wav') is True
        assert archive.pending_names == []
        assert 'gone' not in archive


def test_get_file_strips_extension_and_handles_missing(saved_archive):
    bag, idx = saved_archive

    with BagArchive(bag, bag, idx) as archive:
        assert archive.get_file('alpha.wav').name == 'alpha'
        assert archive.get_file('nothing') is None
        assert archive.get_file('') is None


def test_get_file_loads_pending_lazily(bag_paths, make_pcm_wav):
    bag, _ = bag_paths
    container = AudioContainer(make_pcm_wav('lazy.wav', b'\x05\x00' * 4)).load_header()

    with BagArchive(bag) as archive:
        archive.add_file(container)
        assert not container.is_loaded
        assert archive.get_file('lazy') is container
        assert container.get_samples() == b'\x05\x00' * 4


def test_add_container_built_in_memory(bag_paths):
    bag, _ = bag_paths
    container = AudioContainer.from_params('synth.wav', 8000, 1, Encoding.PCM, 8, b'\x80' * 16)

    with BagArchive(bag) as archive:
        archive.add_file(container)
        archive.save()

    with BagArchive(bag, bag) as archive:
        assert archive.get_file('synth').get_samples() == b'\x80' * 16


def test_add_rejects_invalid_containers(bag_paths, tmp_path):
    bag, _ = bag_paths

    with BagArchive(bag) as archive:
        with pytest.raises(StateError):
            archive.add_file(AudioContainer(tmp_path / 'never_loaded.wav'))
        with pytest.raises(StateError):
            archive.add_file(None)
        with pytest.raises(FormatError):
            archive.add_file(AudioContainer.from_params('hi.wav', 8000, 1, Encoding.PCM, 24, b'\x00' * 3))
        with pytest.raises(FormatError, match='maximum'):
            archive.add_file(AudioContainer.from_params(
                'a_very_long_sound_name.wav', 8000, 1, Encoding.PCM, 8, b'\x00'
            ))
        assert len(archive) == 0
        assert not archive.is_modified


@pytest.mark.parametrize('version,mono,stereo', [(2, 12, 13), (4, 28, 29)])
def test_adpcm_code_depends_on_index_version(bag_paths, make_adpcm_wav, version, mono, stereo):
    bag, _ = bag_paths

    with BagArchive(bag, index_version=version) as archive:
        m = _add_wav(archive, make_adpcm_wav('m.wav', b'\x00' * 512))
        s = _add_wav(archive, make_adpcm_wav('s.wav', b'\x00' * 512, channels=2))

    assert (m.format_code, s.format_code) == (mono, stereo)


def test_merged_layout_round_trip(bag_paths, three_sounds):
    bag, idx = bag_paths

    with BagArchive(bag, index_version=4) as archive:
        for path in three_sounds:
            _add_wav(archive, path)
        archive.save()

    assert not idx.exists()
    data = bag.read_bytes()
    assert struct.unpack_from('<4sii', data, 0) == (b'GABA', 4, 3)
    index_span = 16 + 3 * 64

    with BagArchive(bag, bag) as archive:
        assert archive.merged_input
        assert archive.index.version == 4
        assert archive.data_end_offset == len(data)
        _assert_offsets_cumulative(archive.index)
        alpha = archive.get_file('alpha')
        assert alpha.get_samples() == b'\x01\x00' * 100
        charlie = archive.index['charlie']
        start = index_span + charlie.data_offset
        assert archive.get_file('charlie').get_samples() == data[start:start + charlie.data_size]

    assert bag.read_bytes() == data


def test_open_hand_built_merged_file(tmp_path):
    payload_a = b'\x11\x00' * 8
    payload_b = b'\x22' * 6
    table = IndexTable(version=4)
    table.add(IndexRecord('one', 0, len(payload_a), 22050, 6, 0))
    table.add(IndexRecord('two', len(payload_a), len(payload_b), 11025, 2, 0))
    bag = tmp_path / 'merged.bag'
    bag.write_bytes(table.to_bytes() + payload_a + payload_b)
    original = bag.read_bytes()
    before = set(tmp_path.iterdir())

    with BagArchive(tmp_path / 'out.bag', bag) as archive:
        assert archive.names() == ['one', 'two']
        assert archive.get_file('two').get_samples() == payload_b
        assert archive.get_file('one').sample_rate == 22050

    assert bag.read_bytes() == original
    assert set(tmp_path.iterdir()) == before


def test_merged_file_with_impossible_count(tmp_path):
    bag = tmp_path / 'broken.bag'
    bag.write_bytes(struct.pack('<4siii', b'GABA', 4, 1000, 0) + b'\x00' * 64)

    with pytest.raises(FormatError):
        BagArchive(tmp_path / 'out.bag', bag)


def test_open_errors(tmp_path):
    with pytest.raises(ValueError):
        BagArchive('')
    with pytest.raises(FileNotFoundError):
        BagArchive(tmp_path / 'out.bag', tmp_path / 'missing.bag')

    bag = tmp_path / 'orphan.bag'
    bag.write_bytes(b'\x00' * 32)
    with pytest.raises(FileNotFoundError, match='Index'):
        BagArchive(tmp_path / 'out.bag', bag)


def test_closed_archive(bag_paths):
    bag, _ = bag_paths
    archive = BagArchive(bag)
    archive.close()

    assert not archive.is_open
    assert archive.get_file('x') is None
    assert archive.get_all_files() == []
    with pytest.raises(StateError):
        archive.names()
    with pytest.raises(StateError):
        archive.save()


def test_get_all_files_skips_unreadable(saved_archive):
    bag, idx = saved_archive
    data = bag.read_bytes()
    bag.write_bytes(data[:-100])

    with BagArchive(bag, bag, idx) as archive:
        with pytest.warns(UserWarning, match='charlie'):
            containers = archive.get_all_files()

    assert [c.name for c in containers] == ['alpha', 'bravo']


def test_get_all_files_skips_unknown_format_code(tmp_path):
    table = IndexTable()
    table.add(IndexRecord('good', 0, 2, 8000, 2, 0))
    table.add(IndexRecord('weird', 2, 2, 8000, 99, 0))
    (tmp_path / 'x.idx').write_bytes(table.to_bytes())
    (tmp_path / 'x.bag').write_bytes(b'\x80\x80\x00\x00')

    with BagArchive(tmp_path / 'x.bag', tmp_path / 'x.bag') as archive:
        assert archive.get_file('weird') is None
        assert [c.name for c in archive.get_all_files()] == ['good']


def test_failed_save_leaves_outputs_untouched(saved_archive, make_pcm_wav):
    bag, idx = saved_archive
    bag_before, idx_before = bag.read_bytes(), idx.read_bytes()
    doomed = make_pcm_wav('doomed.wav', b'\x00\x00' * 8)

    with BagArchive(bag, bag, idx) as archive:
        _add_wav(archive, doomed)
        doomed.unlink()
        with pytest.raises(FileNotFoundError):
            archive.save()

        assert archive.is_modified
        assert archive.index['doomed'].data_offset == -1
        _assert_offsets_cumulative([r for r in archive.index if r.name != 'doomed'])

    assert bag.read_bytes() == bag_before
    assert idx.read_bytes() == idx_before
    assert sorted(p.name for p in bag.parent.iterdir()) == ['audio.bag', 'audio.idx']


def test_save_to_other_paths(saved_archive, tmp_path):
    bag, idx = saved_archive
    new_bag, new_idx = tmp_path / 'copy.bag', tmp_path / 'copy.idx'

    with BagArchive(bag, bag, idx) as archive:
        archive.remove_file('bravo')
        archive.save(new_bag, new_idx)

    assert IndexTable.load(new_idx).names() == ['alpha', 'charlie']
    assert IndexTable.load(idx).names() == ['alpha', 'bravo', 'charlie']


def test_add_files_batch(bag_paths, three_sounds, tmp_path):
    bag, _ = bag_paths
    broken = tmp_path / 'broken.wav'
    broken.write_bytes(b'RIFF')

    with BagArchive(bag) as archive:
        with pytest.warns(UserWarning, match='broken'):
            outcomes = archive.add_files([three_sounds[0], broken, three_sounds[2]])

        assert [o.ok for o in outcomes] == [True, False, True]
        assert outcomes[1].error
        assert archive.names() == ['alpha', 'charlie']


def test_extract_files(saved_archive, tmp_path):
    bag, idx = saved_archive
    out_dir = tmp_path / 'extracted'

    with BagArchive(bag, bag, idx) as archive:
        outcomes = archive.extract_files(['*'], out_dir)

    assert all(o.ok for o in outcomes)
    assert sorted(p.name for p in out_dir.iterdir()) == ['alpha.wav', 'bravo.wav', 'charlie.wav']
    charlie = AudioContainer(out_dir / 'charlie.wav').load_header()
    assert (charlie.encoding, charlie.block_size) == (Encoding.IMA_ADPCM, 256)
    alpha = AudioContainer(out_dir / 'alpha.wav').load_header()
    alpha.load_data()
    assert alpha.get_samples() == b'\x01\x00' * 100


def test_extract_unknown_name_is_reported(saved_archive, tmp_path):
    bag, idx = saved_archive

    with BagArchive(bag, bag, idx) as archive:
        with pytest.warns(UserWarning):
            outcomes = archive.extract_files(['bravo', 'zulu'], tmp_path / 'x')

    assert [o.ok for o in outcomes] == [True, False]


def test_get_metadata(saved_archive, make_pcm_wav):
    bag, idx = saved_archive

    with BagArchive(bag, bag, idx) as archive:
        _add_wav(archive, make_pcm_wav('echo.wav', b'\x00\x00' * 3))
        df = archive.get_metadata()

    assert isinstance(df, pd.DataFrame)
    assert list(df['name']) == ['alpha', 'bravo', 'charlie', 'echo']
    assert list(df['pending']) == [False, False, False, True]
    assert list(df['encoding']) == ['pcm', 'pcm', 'ima_adpcm', 'pcm']
    assert df.loc[3, 'data_offset'] == -1
    assert np.array_equal(df['channels'].to_numpy(dtype=int), [1, 2, 1, 1])


def test_summary_prints(saved_archive, capsys):
    bag, idx = saved_archive

    with BagArchive(bag, bag, idx) as archive:
        archive.summary()

    out = capsys.readouterr().out
    assert 'Total files: 3' in out
    assert 'charlie' in out


def test_extract_skips_records_with_unwritable_headers(tmp_path):
    table = IndexTable()
    table.add(IndexRecord('huge', 0, 4, 22050, 12, 70000))
    table.add(IndexRecord('negative', 4, 2, -1, 2, 0))
    table.add(IndexRecord('good', 6, 2, 8000, 2, 0))
    (tmp_path / 'x.idx').write_bytes(table.to_bytes())
    (tmp_path / 'x.bag').write_bytes(b'\x00' * 6 + b'\x80\x80')
    out_dir = tmp_path / 'out'

    with BagArchive(tmp_path / 'x.bag', tmp_path / 'x.bag') as archive:
        with pytest.warns(UserWarning, match='out of range'):
            outcomes = archive.extract_files(None, out_dir)

    assert [o.ok for o in outcomes] == [False, False, True]
    assert [p.name for p in out_dir.iterdir()] == ['good.wav']


def test_failed_index_replace_keeps_previous_pair(saved_archive, make_pcm_wav, tmp_path):
    bag, idx = saved_archive
    bag_before, idx_before = bag.read_bytes(), idx.read_bytes()
    blocker = tmp_path / 'blocker.idx'
    blocker.mkdir()

    with BagArchive(bag, bag, idx, output_index_path=blocker) as archive:
        _add_wav(archive, make_pcm_wav('extra.wav', b'\x03\x00' * 8))
        with pytest.raises(OSError):
            archive.save()

        assert archive.is_modified
        assert archive.get_file('alpha').get_samples() == b'\x01\x00' * 100

    assert bag.read_bytes() == bag_before
    assert idx.read_bytes() == idx_before
    assert sorted(p.name for p in bag.parent.iterdir()) == ['audio.bag', 'audio.idx']
    assert not list(tmp_path.glob('.*.tmp'))


def test_failed_index_replace_on_new_archive(bag_paths, make_pcm_wav, tmp_path):
    bag, _ = bag_paths
    blocker = tmp_path / 'blocker.idx'
    blocker.mkdir()

    with BagArchive(bag, output_index_path=blocker) as archive:
        _add_wav(archive, make_pcm_wav('extra.wav', b'\x03\x00' * 8))
        with pytest.raises(OSError):
            archive.save()

    assert list(bag.parent.iterdir()) == []
