"""
kernel_forge — build, profile-optimize and install a customized kernel.

Stages:  fetch → patch → configure → compile → install.
The profile loop records samples from an installed kernel and feeds a
converted profile back into a later compile.

See DESIGN.md for the grounding ledger and the open-question decisions.
"""

__version__ = "0.3.0"
PACKAGE_NAME = "kernel_forge"
SCHEMA_VERSION = "0.3"
