"""
Scholaris: Assessment & Academic Record Pipeline

Timed examinations with auto-saved answers, objective and manual grading, and
an idempotent semester release that snapshots attendance, participation,
assignment and exam scores into immutable student transcripts.
"""

__version__ = "1.0.0"
__author__ = "Scholaris Development Team"
__description__ = "Assessment & Academic Record Pipeline"
