# SPDX-License-Identifier: Apache-2.0

"""
Workflow core of the energy-facility license approval pipeline.
"""

__version__ = "1.0.0"
