"""Schema package exports."""

from .analyses import Analysis, AnalysisProgressRow
from .programs import Program, ProgramLesson
from .runs import AnalysisJob, ProgramRun

__all__ = ["Analysis", "AnalysisJob", "AnalysisProgressRow", "Program", "ProgramLesson", "ProgramRun"]
