"""Campaign Path Analysis - recipient journeys through merchant email campaigns"""

from __future__ import annotations

__version__ = "1.0.0"
