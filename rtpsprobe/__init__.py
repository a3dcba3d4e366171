"""RTPS/DDS traffic inspection on byte strings: frame filtering, IP fragment reassembly and topic statistics."""

__version__ = "0.1.0"