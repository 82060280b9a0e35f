from django.db import models

# Largest value every supported database accepts in the matching column.
MAX_BIGINT = models.BigIntegerField.MAX_BIGINT
MAX_POSITIVE_INT = 2147483647

# Bound for a single admin adjustment in either direction.
MAX_ADJUSTMENT = MAX_POSITIVE_INT
