"""
Basecore - shared infrastructure

Settings, logging, database sessions and Redis access used by every
engagement app. No domain code lives here.
"""
