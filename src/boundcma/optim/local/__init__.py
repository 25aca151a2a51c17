from .powell import Bracket, PowellMinimizer, PowellResult, bracket, line_search

__all__ = ["Bracket", "PowellMinimizer", "PowellResult", "bracket", "line_search"]
