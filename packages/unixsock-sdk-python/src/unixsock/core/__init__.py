"""核心契约与错误分类。"""
