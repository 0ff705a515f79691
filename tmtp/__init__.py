"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
TMTP - Testmo to TestPlanIt
A bulk migration engine that analyzes a Testmo export bundle, stages its rows
and imports them into the TestPlanIt data model.
"""

__version__ = "0.1.0"
