# deptxfer/analysis/__init__.py
# Timing and transfer metrics.
