"""Communication log exports.

``renderers`` and ``pdf`` are pure (rows in, bytes out); ``engine`` decides
between inline rendering and a background ``ExportJob`` and owns the job
lifecycle.
"""
