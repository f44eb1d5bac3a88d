"""capsulekit - capsule content-management core.

Capsules are tar archives holding Bible text in its native formats plus an
optional intermediate representation (IR). Format handling lives in
plugins; this package stores, converts and caches capsules.
"""

__version__ = "1.0.0"
