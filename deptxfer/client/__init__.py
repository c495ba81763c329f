# deptxfer/client/__init__.py
# Client side: upload session and interactive prompts.
