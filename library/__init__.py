"""
Domain services for ReadingBud.

Users, books, reviews and collections reference each other in both
directions; the services here keep those references consistent, enforce
ownership and run cascade deletes.
"""
