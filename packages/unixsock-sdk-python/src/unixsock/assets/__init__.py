"""内置资源（default.yaml）。"""
