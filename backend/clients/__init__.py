"""
External platform clients.
"""

from clients.shiprocket import ShiprocketClient
from clients.triplewhale import TripleWhaleClient

__all__ = ["ShiprocketClient", "TripleWhaleClient"]
