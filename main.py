#!/usr/bin/env python3
"""
waveform-spectra — pulse spectra and PSD histograms from digitized waveforms

  python3 main.py spectrum run.root --channel 0 --workers 4 -v
"""

import sys

from waveform_spectra.cli import main


if __name__ == "__main__":
    sys.exit(main())
