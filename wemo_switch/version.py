# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Package wemo_switch discovers, controls and monitors WeMo switches on the local network
"""

# The following line is automatically updated with "semantic-release version"
__version__ =  "0.4.0"


__all__ = [ '__version__' ]
