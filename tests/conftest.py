import os
import sys
from pathlib import Path

# Make the repository root importable so tests can `import mastobot.*`
# without an editable install.
root = Path(__file__).resolve().parents[1]
if str(root) not in sys.path:
    sys.path.insert(0, str(root))
os.environ.setdefault("PYTHONPATH", str(root))
