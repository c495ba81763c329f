# deptxfer/__init__.py
# Department file transfer: authenticated, department-scoped uploads over TCP.

__version__ = "1.0.0"
