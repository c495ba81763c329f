# deptxfer/common/__init__.py
# Pieces shared by the server and the client: constants, departments, wire framing, logging setup.
