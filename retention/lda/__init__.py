"""
LDA (last date of attendance) outreach reports over a retention workbook.

  create_lda_report()   build the dated LDA sheet from the Master List
  merge_master_list()   replace the Master List with an imported roster
  update_grades()       push a grade export onto the Master List
"""

from .errors import LdaError, PreconditionError, SettingsError, SheetWriteError
from .importer import ImportTable, read_import_file
from .master_list import GradeUpdateSummary, MergeSummary, merge_master_list, update_grades
from .report import ReportResult, create_lda_report
from .settings import Settings, load_settings
from .workbook_port import OpenpyxlSheetPort

__all__ = [
    "GradeUpdateSummary",
    "ImportTable",
    "LdaError",
    "MergeSummary",
    "OpenpyxlSheetPort",
    "PreconditionError",
    "ReportResult",
    "SettingsError",
    "Settings",
    "SheetWriteError",
    "create_lda_report",
    "load_settings",
    "merge_master_list",
    "read_import_file",
    "update_grades",
]
