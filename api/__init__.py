"""
FastAPI RESTful API for the ReadingBud social reading service.

This module provides the HTTP surface for:
- Registration, token login and following other readers
- The admin-maintained book catalog with cover uploads
- Reviews and user-curated collections
"""
