"""podsplit - deduplicating POD5 chunk partitioner

Splits a POD5 file into fixed-size chunks that contain only reads whose
ID appears exactly once, verifies every chunk, and drives the per-chunk
basecalling and FASTQ export around it.
"""

__version__ = "1.0.0"
__author__ = "Single Molecule Sequencing Lab, University of Michigan"
