# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
