BENCHMARK_LEVELS = [
    {
        "id": "L0_SIGNAL",
        "name": "Signal Primitives",
        "description": "Single sustained sine tones (middle C, A4) followed by silence.",
        "examples": ["sine_262", "sine_440"],
        "expected_metrics": {"recall": 1.0, "precision": 1.0},
    },
    {
        "id": "L1_MONO",
        "name": "Monophonic Scales",
        "description": "C major scale up and down in quarter notes at 120 bpm.",
        "examples": ["c_major_scale"],
        "expected_metrics": {"recall": 0.9},
    },
    {
        "id": "L2_PHRASES",
        "name": "Articulated Phrases",
        "description": "Repeated pitches separated by rests, and a legato line with tiny gaps.",
        "examples": ["gapped_repeats", "legato_line"],
        "expected_metrics": {"recall": 0.9},
    },
    {
        "id": "L3_CHROMATIC",
        "name": "Chromatic Material",
        "description": "Out-of-key notes that quantization must leave chromatic.",
        "examples": ["chromatic_neighbors"],
        "expected_metrics": {"recall": 0.8},
    },
    {
        "id": "L4_LONG",
        "name": "Long Form",
        "description": "60 s melody analysed across overlapping chunks.",
        "examples": ["long_melody"],
        "expected_metrics": {"recall": 0.8},
    },
]
