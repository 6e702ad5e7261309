"""Import the real packages before pytest's importlib mode registers the
same-named repo-level directories (which hold the test suites) as
namespace packages."""

import tabula_api  # noqa: F401
import tabula_engine  # noqa: F401
