"""Static metadata describing ExamDesk."""

APP_NAME = "ExamDesk"
APP_VERSION = "0.1"
APP_LICENSE = "MIT License"
APP_ABOUT_TEXT = (
    "ExamDesk runs timed class exams: it loads an exam scoped to a class, section "
    "and group, presents the questions in a shuffled order, watches for students "
    "leaving the exam window, and scores and stores each attempt exactly once."
)
