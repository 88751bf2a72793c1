import os
import tempfile

# Keep the module level settings singleton away from the user's real app data
os.environ.setdefault('EXPENSESYNC_CONFIG_DIR', tempfile.mkdtemp(prefix='expensesync_test_'))
os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')
