"""EduGuard core: student risk evaluation and guardian notification."""
