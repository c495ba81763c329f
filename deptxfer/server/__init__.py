# deptxfer/server/__init__.py
# Server side: authentication, file receive, storage guard, accept loop.
