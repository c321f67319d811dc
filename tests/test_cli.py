import numpy as np
import pytest

from waveform_spectra.cli import main


@pytest.fixture
def root_file(tmp_path):
    uproot = pytest.importorskip("uproot")
    data = np.full((4, 1000), 100, dtype=np.int32)
    data[:, 400:450] = 500
    path = str(tmp_path / "run.root")
    with uproot.recreate(path) as f:
        f["WaveformTree"] = {"VoltageInADC_Ch0": data}
    return path


def test_count_rate_with_more_events_than_the_file(root_file, capsys):
    code = main(["count-rate", root_file, "--events", "10",
                 "--pulse-width-us", "1", "--rep-rate-hz", "100"])
    assert code == 0
    out = capsys.readouterr().out
    assert "Waveforms          : 4" in out
    assert "Peaks              : 4" in out


def test_missing_file_exits_with_error(tmp_path):
    code = main(["count-rate", str(tmp_path / "none.root"),
                 "--pulse-width-us", "1", "--rep-rate-hz", "100"])
    assert code == 2
